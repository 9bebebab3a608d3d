"""Media downloads for a single already-committed post."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from pathlib import Path, PurePosixPath
from typing import List, Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel

from .model import MediaItem

ASSETS_DIR = "assets"
DOWNLOAD_TIMEOUT = 60.0

logger = logging.getLogger("bookmarks.media")


class LocalMedia(BaseModel):
    type: str
    local_path: str  # relative to the output dir, e.g. assets/xyz.jpg
    original_url: str


def download_url(item: MediaItem) -> str:
    if item.type in ("video", "animated_gif") and item.video_url:
        return item.video_url
    if item.type == "photo":
        if "name=" in item.url:
            return re.sub(r"name=\w+", "name=large", item.url)
        return item.url + ("&" if "?" in item.url else "?") + "name=large"
    return item.url


def local_filename(url: str) -> str:
    name = PurePosixPath(urlparse(url).path).name
    if not name:
        name = f"media_{uuid.uuid4().hex[:12]}.jpg"
    return name


class MediaDownloader:
    """
    Downloads every media item of one post concurrently (bounded by a
    semaphore) into <output>/assets/. Existing files are reused and failed
    downloads are dropped; media never fails the post.
    """

    def __init__(
        self,
        output_dir: str,
        concurrency: int = 4,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.output_dir = Path(output_dir)
        self.concurrency = concurrency
        self._http = http
        self._owns_http = http is None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
        return self._http

    async def _download_one(self, item: MediaItem, sem: asyncio.Semaphore) -> Optional[LocalMedia]:
        url = download_url(item)
        local_path = f"{ASSETS_DIR}/{local_filename(url)}"
        full_path = self.output_dir / local_path
        if full_path.exists():
            return LocalMedia(type=item.type, local_path=local_path, original_url=item.url)

        async with sem:
            try:
                resp = await self._client().get(url)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning("Failed to download media %s: %s", url, e)
                return None

        def _write():
            full_path.parent.mkdir(parents=True, exist_ok=True)
            full_path.write_bytes(resp.content)

        await asyncio.to_thread(_write)
        return LocalMedia(type=item.type, local_path=local_path, original_url=item.url)

    async def download(self, media: List[MediaItem]) -> List[LocalMedia]:
        if not media:
            return []
        sem = asyncio.Semaphore(self.concurrency)
        results = await asyncio.gather(*[self._download_one(item, sem) for item in media])
        return [r for r in results if r is not None]

    async def close(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
