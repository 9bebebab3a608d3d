from __future__ import annotations

import os
from typing import Any, Optional

from pydantic import BaseModel, field_validator, model_validator

MAX_QUOTE_DEPTH = 20

# Fallbacks for the BOOKMARKS_* env knobs; the environment is read by
# ExportOptions.from_env() when it is called, after any .env file is loaded.
DEFAULT_OUTPUT_DIR = "./bookmarks"
DEFAULT_QUOTE_DEPTH = "3"
DEFAULT_PAGE_DELAY = 2.0
DEFAULT_MEDIA_CONCURRENCY = 4

_UNLIMITED = {"unlimited", "all", "max"}


def clamp_quote_depth(depth: Optional[int]) -> int:
    """
    Resolve a requested quote depth. None means unlimited, which like any
    request above the ceiling is clamped to MAX_QUOTE_DEPTH.
    """
    if depth is None:
        return MAX_QUOTE_DEPTH
    return max(0, min(int(depth), MAX_QUOTE_DEPTH))


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


class ExportOptions(BaseModel):
    output_dir: str = DEFAULT_OUTPUT_DIR

    quote_depth: Optional[int] = 3
    include_replies: bool = True

    max_pages: Optional[int] = None
    page_delay_seconds: float = DEFAULT_PAGE_DELAY

    use_date_folders: bool = False

    rebuild_mode: bool = False
    backfill_replies: bool = False
    backfill_frontmatter: bool = False

    existing_stop_threshold: Optional[int] = None

    fetch_articles: bool = True
    download_media: bool = True
    media_concurrency: int = DEFAULT_MEDIA_CONCURRENCY

    @field_validator("quote_depth", mode="before")
    @classmethod
    def _unlimited_quote_depth(cls, v: Any) -> Any:
        if isinstance(v, str):
            if v.strip().lower() in _UNLIMITED:
                return None
            return int(v)
        return v

    @field_validator("quote_depth")
    @classmethod
    def _non_negative_depth(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("quote_depth cannot be negative")
        return v

    @field_validator("max_pages")
    @classmethod
    def _positive_max_pages(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("max_pages must be positive if provided")
        return v

    @field_validator("existing_stop_threshold")
    @classmethod
    def _positive_threshold(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("existing_stop_threshold must be positive if provided")
        return v

    @field_validator("page_delay_seconds")
    @classmethod
    def _non_negative_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("page_delay_seconds cannot be negative")
        return v

    @field_validator("media_concurrency")
    @classmethod
    def _positive_concurrency(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("media_concurrency must be positive")
        return v

    @model_validator(mode="after")
    def _backfill_requires_rebuild(self) -> "ExportOptions":
        if (self.backfill_replies or self.backfill_frontmatter) and not self.rebuild_mode:
            raise ValueError("backfill options require rebuild_mode")
        return self

    @property
    def effective_quote_depth(self) -> int:
        return clamp_quote_depth(self.quote_depth)

    @classmethod
    def from_env(cls, **overrides: Any) -> "ExportOptions":
        """
        Build options from BOOKMARKS_* env knobs; explicit overrides win.
        """
        values: dict = {
            "output_dir": _env_str("BOOKMARKS_OUTPUT_DIR", DEFAULT_OUTPUT_DIR),
            "quote_depth": _env_str("BOOKMARKS_QUOTE_DEPTH", DEFAULT_QUOTE_DEPTH),
            "include_replies": _env_flag("BOOKMARKS_INCLUDE_REPLIES", True),
            "max_pages": _env_int("BOOKMARKS_MAX_PAGES"),
            "page_delay_seconds": _env_float("BOOKMARKS_PAGE_DELAY", DEFAULT_PAGE_DELAY),
            "use_date_folders": _env_flag("BOOKMARKS_DATE_FOLDERS"),
            "rebuild_mode": _env_flag("BOOKMARKS_REBUILD"),
            "backfill_replies": _env_flag("BOOKMARKS_BACKFILL_REPLIES"),
            "backfill_frontmatter": _env_flag("BOOKMARKS_BACKFILL_FRONTMATTER"),
            "existing_stop_threshold": _env_int("BOOKMARKS_EXISTING_STOP_THRESHOLD"),
            "download_media": _env_flag("BOOKMARKS_DOWNLOAD_MEDIA", True),
            "fetch_articles": _env_flag("BOOKMARKS_FETCH_ARTICLES", True),
            "media_concurrency": _env_int("BOOKMARKS_MEDIA_CONCURRENCY", DEFAULT_MEDIA_CONCURRENCY),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
