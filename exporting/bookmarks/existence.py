from __future__ import annotations

import asyncio
import glob
import re
from pathlib import Path
from typing import Optional

from .model import Post, parse_created_at

UNKNOWN_DATE = "unknown-date"

_CURLY_QUOTES = re.compile("[‘’“”]")
_DASHES = re.compile("[\u2013\u2014]")
_ELLIPSIS = re.compile("…|\\.{2,}")
_NON_ASCII = re.compile(r"[^\x00-\x7F]")
# filesystem-invalid characters plus markdown-vault link breakers
_INVALID = re.compile(r'[<>:"/\\|?*#\[\]^()!,]')
_WHITESPACE = re.compile(r"\s+")
_MULTI_DASH = re.compile(r"-+")
_EDGE = re.compile(r"^[-.]+|[-.]+$")


def sanitize_filename(value: str) -> str:
    s = _CURLY_QUOTES.sub("", value)
    s = _DASHES.sub("-", s)
    s = _ELLIPSIS.sub("", s)
    s = _NON_ASCII.sub("", s)
    s = _INVALID.sub("", s)
    s = _WHITESPACE.sub("-", s)
    s = _MULTI_DASH.sub("-", s)
    return _EDGE.sub("", s)


def date_folder(created_at: Optional[str]) -> str:
    dt = parse_created_at(created_at)
    if dt is None:
        return UNKNOWN_DATE
    return f"{dt.year:04d}/{dt.month:02d}"


def date_prefix(created_at: Optional[str], use_date_folders: bool = False) -> str:
    """
    yyyy-mm-dd, or just the day when the yyyy/mm folder already carries the rest.
    """
    dt = parse_created_at(created_at)
    if dt is None:
        return UNKNOWN_DATE
    if use_date_folders:
        return f"{dt.day:02d}"
    return dt.strftime("%Y-%m-%d")


class ExistenceIndex:
    """
    Answers "was this post already exported?" from the filesystem alone.

    Files are named <date>-<handle>-<id>.md. Lookups go by id so that a
    renamed handle still matches; the date prefix narrows the scan when the
    creation date is known.
    """

    def __init__(self, output_dir: str, use_date_folders: bool = False):
        self.output_dir = Path(output_dir)
        self.use_date_folders = use_date_folders

    def filename_for(self, post: Post) -> str:
        prefix = date_prefix(post.created_at, self.use_date_folders)
        return f"{prefix}-{sanitize_filename(post.author.username)}-{post.id}.md"

    def path_for(self, post: Post) -> Path:
        if self.use_date_folders:
            return self.output_dir / date_folder(post.created_at) / self.filename_for(post)
        return self.output_dir / self.filename_for(post)

    def _pattern(self, post_id: str, created_at: Optional[str]) -> str:
        pid = glob.escape(post_id)
        if parse_created_at(created_at) is not None:
            prefix = date_prefix(created_at, self.use_date_folders)
            if self.use_date_folders:
                return f"{date_folder(created_at)}/{prefix}-*-{pid}.md"
            return f"{prefix}-*-{pid}.md"
        # Without a date, scan every folder
        return f"**/*-{pid}.md" if self.use_date_folders else f"*-{pid}.md"

    def _scan(self, pattern: str) -> Optional[Path]:
        if not self.output_dir.is_dir():
            return None
        for match in self.output_dir.glob(pattern):
            if match.is_file():
                return match
        return None

    async def locate(self, post_id: str, created_at: Optional[str] = None) -> Optional[Path]:
        return await asyncio.to_thread(self._scan, self._pattern(post_id, created_at))

    async def exists(self, post_id: str, created_at: Optional[str] = None) -> bool:
        return await self.locate(post_id, created_at) is not None


ARTICLES_DIR = "articles"
UNTITLED_ARTICLE = "Untitled Article"


def article_filename(title: Optional[str]) -> str:
    """articles/<sanitized title, at most 100 chars>.md, relative to the output dir."""
    safe = sanitize_filename(title or UNTITLED_ARTICLE)[:100] or sanitize_filename(UNTITLED_ARTICLE)
    return f"{ARTICLES_DIR}/{safe}.md"
