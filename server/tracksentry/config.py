"""
Runtime settings.

Uses ``pydantic_settings.BaseSettings`` so every value can be
supplied through ``TRACKSENTRY_``-prefixed environment
variables (or a ``.env`` file loaded at server start).
Policy tunables live in :class:`~tracksentry.models.policy.PolicyConfig`.
"""

from __future__ import annotations

import pathlib

import pydantic
import pydantic_settings


class ShieldSettings(pydantic_settings.BaseSettings):
    """Process-level settings for the engine and its HTTP surface.

    Attributes:
        state_dir: Directory for the JSON file store.  When unset,
            state is kept in memory only.
        policy_file: Optional JSON file merged over the default policy.
        workers: Number of key-sharded pipeline workers.
        queue_size: Per-worker queue bound (back-pressure on submit).
        deferred_grace_seconds: Delay between a sensitive context
            clearing and deferred blocks being activated.
        host: HTTP bind address.
        port: HTTP port.
    """

    model_config = pydantic_settings.SettingsConfigDict(env_prefix="TRACKSENTRY_", extra="ignore")

    state_dir: pathlib.Path | None = None
    policy_file: pathlib.Path | None = None
    workers: int = pydantic.Field(default=4, ge=1, le=64)
    queue_size: int = pydantic.Field(default=1000, ge=1)
    deferred_grace_seconds: float = pydantic.Field(default=3.0, ge=0)
    host: str = pydantic.Field(default="0.0.0.0", validation_alias="UVICORN_HOST")
    port: int = pydantic.Field(default=3001, validation_alias="UVICORN_PORT")
