"""
ReplGuard — JSON File Cache Store

Persists delta-cache entries as one JSON document keyed by node id.
The file is always replaced whole: written to a temporary sibling and
renamed over the original, so a crash mid-write leaves the previous
version intact.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import tempfile
from pathlib import Path

import orjson
import structlog
from pydantic import ValidationError

from replguard.core.errors import CacheCorruptionError, CacheStoreError
from replguard.systems.delta.types import CacheEntry

logger = structlog.get_logger("replguard.clients.cache_store")

_FORMAT_VERSION = 1


class JsonFileCacheStore:
    """File-backed CacheStore."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._logger = logger.bind(component="json_cache_store", path=str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> dict[str, CacheEntry]:
        """
        Read all entries. A missing file is an empty cache.

        Raises CacheCorruptionError if the file exists but cannot be parsed.
        """
        return await asyncio.to_thread(self._load_sync)

    async def save(self, entries: dict[str, CacheEntry]) -> None:
        await asyncio.to_thread(self._save_sync, entries)

    def _load_sync(self) -> dict[str, CacheEntry]:
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise CacheCorruptionError(f"Cannot read cache file: {exc}") from exc

        try:
            doc = orjson.loads(raw)
            if not isinstance(doc, dict) or not isinstance(doc.get("entries"), dict):
                raise CacheCorruptionError("Cache document has no 'entries' map")
            return {
                key: CacheEntry.model_validate(value)
                for key, value in doc["entries"].items()
            }
        except (orjson.JSONDecodeError, ValidationError) as exc:
            raise CacheCorruptionError(f"Corrupt cache file: {exc}") from exc

    def _save_sync(self, entries: dict[str, CacheEntry]) -> None:
        doc = {
            "version": _FORMAT_VERSION,
            "entries": {k: e.model_dump(mode="json") for k, e in entries.items()},
        }
        payload = orjson.dumps(doc, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS)

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.",
                suffix=".tmp",
                dir=self._path.parent,
            )
        except OSError as exc:
            raise CacheStoreError(f"Cannot write cache file: {exc}") from exc

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise CacheStoreError(f"Cannot write cache file: {exc}") from exc

        self._logger.debug("cache_file_written", entries=len(entries), bytes=len(payload))
