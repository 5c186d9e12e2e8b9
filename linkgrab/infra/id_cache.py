# linkgrab/infra/id_cache.py
"""
Destination-id cache: canonical link + media kind → Telegram ``file_id``.

The whole table lives in memory behind a single-writer/many-reader lock.
It is read from ``{cache_dir}/tg_id_cache.json`` once at startup and written
back wholesale at shutdown (optionally also on a timer)::

    {"tracks": {"https://youtu.be/ID": "<file_id>"},
     "videos": {"https://youtu.be/ID": "<file_id>"}}

A missing file is an empty cache. Any other read/parse problem raises
``CacheLoadError`` and should stop startup.
"""
from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Optional

from linkgrab.core.domain import MediaKind
from linkgrab.infra.logging_config import get_logger
from linkgrab.infra.rwlock import AsyncRWLock

logger = get_logger(__name__)

NAMESPACES = tuple(kind.cache_namespace for kind in MediaKind)


class CacheLoadError(Exception):
    """The cache file exists but can't be used."""


def _empty_table() -> dict[str, dict[str, str]]:
    return {namespace: {} for namespace in NAMESPACES}


def _validate_table(raw: object, path: Path) -> dict[str, dict[str, str]]:
    if not isinstance(raw, dict):
        raise CacheLoadError(f"{path}: top level is not a JSON object")

    table = _empty_table()
    for namespace in NAMESPACES:
        entries = raw.get(namespace, {})
        if not isinstance(entries, dict):
            raise CacheLoadError(f"{path}: {namespace!r} is not a JSON object")
        for uri, destination_id in entries.items():
            if not isinstance(destination_id, str):
                raise CacheLoadError(f"{path}: {namespace}[{uri!r}] is not a string")
            table[namespace][uri] = destination_id
    return table


class IdCache:
    """
    Concurrent ``(uri, kind) → destination id`` map with file persistence.

    ``get`` copies the value out and releases the lock before returning,
    so callers never hold the lock across network I/O.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._table = _empty_table()
        self._lock = AsyncRWLock()

    def load(self) -> int:
        """
        Replace the in-memory table with the file contents.

        Called once at startup, before any request is served.

        Returns:
            Number of entries loaded.

        Raises:
            CacheLoadError: file exists but is unreadable, not JSON, or malformed.
        """
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            logger.info(f"ID cache file {self.path} not found, starting empty")
            self._table = _empty_table()
            return 0
        except (OSError, ValueError) as exc:
            raise CacheLoadError(f"failed to read {self.path}: {exc}") from exc

        self._table = _validate_table(raw, self.path)
        count = len(self)
        logger.info(f"ID cache loaded: {count} entries from {self.path}")
        return count

    async def get(self, uri: str, kind: MediaKind) -> Optional[str]:
        async with self._lock.read():
            return self._table[kind.cache_namespace].get(uri)

    async def set(self, uri: str, kind: MediaKind, destination_id: str) -> None:
        async with self._lock.write():
            self._table[kind.cache_namespace][uri] = destination_id

    async def snapshot(self) -> dict[str, dict[str, str]]:
        async with self._lock.read():
            return {namespace: dict(entries) for namespace, entries in self._table.items()}

    async def flush(self) -> None:
        """Write the whole table to ``self.path`` (temp file + atomic rename)."""
        data = await self.snapshot()
        await asyncio.to_thread(self._write, data)
        logger.info(f"ID cache flushed: {sum(len(v) for v in data.values())} entries to {self.path}")

    def _write(self, data: dict[str, dict[str, str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._table.values())


class PeriodicFlusher:
    """Flushes an IdCache every ``interval`` seconds until stopped."""

    def __init__(self, cache: IdCache, interval: float):
        self._cache = cache
        self._interval = interval
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="id_cache_flusher")
            logger.info(f"ID cache periodic flush every {self._interval}s")

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._cache.flush()
            except OSError as exc:
                logger.error(f"Periodic ID cache flush failed: {exc}")
