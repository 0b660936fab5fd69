"""Common model configuration."""

from __future__ import annotations

import pydantic

from tracksentry.utils.serialization import snake_to_camel


class CamelModel(pydantic.BaseModel):
    """Base model that serialises with camelCase aliases.

    Field names stay snake_case in Python; ``by_alias=True``
    dumps produce the camelCase payloads consumed by the UI
    and telemetry layers.
    """

    model_config = pydantic.ConfigDict(alias_generator=snake_to_camel, populate_by_name=True)
