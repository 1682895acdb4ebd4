"""Persistent key-value memory keyed by namespaced paths (``prefs/u123``)."""

import json
import logging
import re
from pathlib import Path
from typing import Protocol

from orion.errors import MemoryStoreError

logger = logging.getLogger(__name__)

_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class MemoryStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...


def validate_key(key: str) -> list[str]:
    segments = key.strip("/").split("/")
    if not key or key.startswith("/") or any(
        not _SEGMENT.match(segment) or segment in {".", ".."} for segment in segments
    ):
        raise MemoryStoreError(f"invalid memory key: {key!r}")
    return segments


class FileMemoryStore:
    """One JSON file per key under ``root``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        segments = validate_key(key)
        return self.root.joinpath(*segments[:-1], f"{segments[-1]}.json")

    async def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise MemoryStoreError(f"could not read {key}: {exc}") from exc
        value = payload.get("value") if isinstance(payload, dict) else None
        return value if isinstance(value, str) else None

    async def put(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps({"key": key, "value": value}), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            raise MemoryStoreError(f"could not write {key}: {exc}") from exc


class SafeMemory:
    """Store wrapper that turns failures into "no prior memory"."""

    def __init__(self, store: MemoryStore | None) -> None:
        self.store = store

    async def get(self, key: str) -> str | None:
        if self.store is None:
            return None
        try:
            return await self.store.get(key)
        except Exception as exc:
            logger.warning("Memory read failed key=%s error=%s", key, exc)
            return None

    async def put(self, key: str, value: str) -> bool:
        if self.store is None:
            return False
        try:
            await self.store.put(key, value)
        except Exception as exc:
            logger.warning("Memory write failed key=%s error=%s", key, exc)
            return False
        return True


def preferences_key(user_id: str) -> str:
    safe = _UNSAFE_CHARS.sub("_", user_id).lstrip("._-") or "anonymous"
    return f"preferences/{safe}"


async def load_preferences(memory: SafeMemory, user_id: str | None) -> dict[str, str]:
    if not user_id:
        return {}
    raw = await memory.get(preferences_key(user_id))
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return {"notes": raw}
    if not isinstance(decoded, dict):
        return {}
    return {str(key): str(value) for key, value in decoded.items()}
