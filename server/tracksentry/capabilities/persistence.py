"""Namespaced key-value persistence capability.

Engines persist user overrides, fingerprint state, pattern
history and feedback through this narrow contract.  Values
are plain JSON records: sets are flattened to lists before
they get here.

``JsonFileStore`` keeps one JSON file per key under
``<root>/<namespace>/``.  Unreadable files are logged and
removed rather than failing the caller.
"""

from __future__ import annotations

import copy
import json
import pathlib
from typing import Any, Protocol

from tracksentry.utils import errors, logger

log = logger.create_logger("Persistence")


class KeyValueStore(Protocol):
    async def get(self, namespace: str, key: str) -> Any | None: ...

    async def set(self, namespace: str, key: str, value: Any) -> None: ...

    async def delete(self, namespace: str, key: str) -> None: ...

    async def keys(self, namespace: str) -> list[str]: ...


class MemoryStore:
    """Dictionary-backed store.

    Values are deep-copied in and out so callers can never
    mutate stored state by accident.  ``fail`` makes every
    call raise :class:`CapabilityError`.
    """

    def __init__(self) -> None:
        self.data: dict[str, dict[str, Any]] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise errors.CapabilityError("persistence unavailable")

    async def get(self, namespace: str, key: str) -> Any | None:
        self._check()
        value = self.data.get(namespace, {}).get(key)
        return copy.deepcopy(value)

    async def set(self, namespace: str, key: str, value: Any) -> None:
        self._check()
        self.data.setdefault(namespace, {})[key] = copy.deepcopy(value)

    async def delete(self, namespace: str, key: str) -> None:
        self._check()
        self.data.get(namespace, {}).pop(key, None)

    async def keys(self, namespace: str) -> list[str]:
        self._check()
        return sorted(self.data.get(namespace, {}))


def _safe_name(key: str) -> str:
    return "".join(c if c.isalnum() or c in ".-_" else "_" for c in key)[:100]


class JsonFileStore:
    """One JSON file per key on the local filesystem."""

    def __init__(self, root: pathlib.Path | str) -> None:
        self._root = pathlib.Path(root)

    def _path(self, namespace: str, key: str) -> pathlib.Path:
        return self._root / _safe_name(namespace) / f"{_safe_name(key)}.json"

    async def get(self, namespace: str, key: str) -> Any | None:
        path = self._path(namespace, key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warn("Failed to read stored record, removing", {"namespace": namespace, "key": key, "error": str(exc)})
            path.unlink(missing_ok=True)
            return None

    async def set(self, namespace: str, key: str, value: Any) -> None:
        path = self._path(namespace, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(value, indent=2), encoding="utf-8")
            tmp.replace(path)
        except (OSError, TypeError, ValueError) as exc:
            raise errors.CapabilityError(f"Failed to write {namespace}/{key}: {exc}") from exc

    async def delete(self, namespace: str, key: str) -> None:
        try:
            self._path(namespace, key).unlink(missing_ok=True)
        except OSError as exc:
            raise errors.CapabilityError(f"Failed to delete {namespace}/{key}: {exc}") from exc

    async def keys(self, namespace: str) -> list[str]:
        directory = self._root / _safe_name(namespace)
        if not directory.exists():
            return []
        return sorted(p.stem for p in directory.glob("*.json"))
