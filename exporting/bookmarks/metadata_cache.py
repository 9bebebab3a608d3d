from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, ValidationError

from .checkpointer import write_atomic
from .model import parse_created_at

CACHE_FILE = "metadata-cache.json"
CACHE_TTL = timedelta(days=7)

logger = logging.getLogger("bookmarks.metadata_cache")

Fetcher = Callable[[str], Awaitable[Any]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CacheEntry(BaseModel):
    value: Any
    fetched_at: str


class MetadataCache:
    """
    URL -> link metadata, persisted next to the export.

    Constructed once per run and handed to every call site. The document is
    loaded lazily on first use and flushed after every write.
    """

    def __init__(
        self,
        output_dir: str,
        ttl: timedelta = CACHE_TTL,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.path = Path(output_dir) / CACHE_FILE
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._loaded = False

    async def load(self) -> None:
        if self._loaded:
            return

        def _read() -> Optional[str]:
            if not self.path.exists():
                return None
            return self.path.read_text(encoding="utf-8")

        raw = await asyncio.to_thread(_read)
        entries: Dict[str, CacheEntry] = {}
        if raw:
            try:
                entries = {url: CacheEntry.model_validate(e) for url, e in json.loads(raw).items()}
            except (ValueError, AttributeError, ValidationError) as e:
                logger.warning("Could not parse %s, starting fresh: %s", self.path.name, e)
        self._entries = entries
        self._loaded = True

    async def flush(self) -> None:
        payload = json.dumps({url: e.model_dump(mode="json") for url, e in self._entries.items()}, indent=2)
        await asyncio.to_thread(write_atomic, self.path, payload)

    def _is_fresh(self, entry: CacheEntry) -> bool:
        fetched_at = parse_created_at(entry.fetched_at)
        if fetched_at is None:
            return False
        return self._clock() - fetched_at < self.ttl

    async def get(self, url: str) -> Optional[Any]:
        await self.load()
        entry = self._entries.get(url)
        if entry is not None and self._is_fresh(entry):
            return entry.value
        return None

    async def put(self, url: str, value: Any) -> None:
        await self.load()
        self._entries[url] = CacheEntry(value=value, fetched_at=self._clock().isoformat())
        await self.flush()

    async def get_or_fetch(self, url: str, fetcher: Fetcher) -> Any:
        """
        Return the cached value while fresh, even when the fetcher had nothing
        (None) for this URL; otherwise fetch and store.
        """
        await self.load()
        entry = self._entries.get(url)
        if entry is not None and self._is_fresh(entry):
            return entry.value
        value = await fetcher(url)
        await self.put(url, value)
        return value
