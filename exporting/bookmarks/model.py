from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

# Timeline APIs return "Wed Oct 10 20:19:24 +0000 2018"
_LEGACY_CREATED_AT = "%a %b %d %H:%M:%S %z %Y"


class Author(BaseModel):
    username: str
    name: Optional[str] = None


class MediaItem(BaseModel):
    type: Literal["photo", "video", "animated_gif"] = "photo"
    url: str
    video_url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


class Article(BaseModel):
    """Long-form article attached to a post; `title` names the file under articles/."""

    title: Optional[str] = None
    preview_text: Optional[str] = None


class Post(BaseModel):
    """
    A single post as handed over by the client collaborator.

    `quoted_post` is whatever the platform embedded, often a truncated
    summary; QuoteExpander replaces it with the fully fetched post.
    """

    id: str
    author: Author
    created_at: Optional[str] = None
    text: str = ""
    in_reply_to_id: Optional[str] = None
    quoted_post: Optional[Post] = None
    media: List[MediaItem] = Field(default_factory=list)
    article: Optional[Article] = None

    @property
    def handle(self) -> str:
        return self.author.username.lower()

    @property
    def url(self) -> str:
        return f"https://x.com/{self.author.username}/status/{self.id}"


class ExpandedThread(BaseModel):
    continuation: List[Post] = Field(default_factory=list)
    replies: List[Post] = Field(default_factory=list)


class ExpandedBookmark(BaseModel):
    post: Post
    continuation: List[Post] = Field(default_factory=list)
    replies: List[Post] = Field(default_factory=list)


def parse_created_at(value: Optional[str]) -> Optional[datetime]:
    """
    Parse ISO-8601 or legacy timeline timestamps into an aware UTC datetime.
    Returns None when the value is missing or unparseable.
    """
    if not value:
        return None
    s = value.strip()
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        pass
    try:
        return datetime.strptime(value.strip(), _LEGACY_CREATED_AT).astimezone(timezone.utc)
    except ValueError:
        return None
