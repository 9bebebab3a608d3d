"""
Shared fixtures for bookmark exporter tests.
"""
from typing import Dict, List, Optional, Set, Tuple

import pytest

from exporting.bookmarks.client import BookmarkPage, ConversationResult, PostResult
from exporting.bookmarks.model import Article, Author, Post
from exporting.bookmarks.options import ExportOptions


def make_post(
    post_id: str,
    author: str = "alice",
    reply_to: Optional[str] = None,
    quoted: Optional[Post] = None,
    created_at: Optional[str] = "2024-05-01T12:00:00Z",
    text: Optional[str] = None,
    article: Optional[Article] = None,
) -> Post:
    return Post(
        id=post_id,
        author=Author(username=author, name=author.title()),
        created_at=created_at,
        text=text if text is not None else f"post {post_id}",
        in_reply_to_id=reply_to,
        quoted_post=quoted,
        article=article,
    )


class FakeClient:
    """
    Scripted platform client. Pages are keyed by the cursor used to fetch
    them; every call is recorded in `calls` as (endpoint, argument).
    """

    def __init__(self):
        self.pages: Dict[Optional[str], BookmarkPage] = {}
        self.conversations: Dict[str, List[Post]] = {}
        self.posts: Dict[str, Post] = {}
        self.rate_limited_cursors: Set[Optional[str]] = set()
        self.failing_cursors: Set[Optional[str]] = set()
        self.rate_limited_conversations: Set[str] = set()
        self.failing_conversations: Set[str] = set()
        self.rate_limited_posts: Set[str] = set()
        self.failing_posts: Set[str] = set()
        self.calls: List[Tuple[str, Optional[str]]] = []

    def set_pages(self, *pages: List[Post]) -> None:
        """Chain pages as None -> c1 -> c2 ...; the last page has no next cursor."""
        cursor: Optional[str] = None
        for n, posts in enumerate(pages, start=1):
            next_cursor = f"c{n}" if n < len(pages) else None
            self.pages[cursor] = BookmarkPage(posts=posts, next_cursor=next_cursor)
            cursor = next_cursor

    def calls_to(self, endpoint: str) -> List[Optional[str]]:
        return [arg for ep, arg in self.calls if ep == endpoint]

    async def fetch_bookmark_page(self, cursor: Optional[str] = None) -> BookmarkPage:
        self.calls.append(("bookmarks", cursor))
        if cursor in self.rate_limited_cursors:
            return BookmarkPage(success=False, error="Too Many Requests", status_code=429)
        if cursor in self.failing_cursors:
            return BookmarkPage(success=False, error="internal error", status_code=500)
        return self.pages.get(cursor, BookmarkPage())

    async def fetch_conversation(self, post_id: str) -> ConversationResult:
        self.calls.append(("conversation", post_id))
        if post_id in self.rate_limited_conversations:
            raise RuntimeError("Rate limit exceeded (429)")
        if post_id in self.failing_conversations:
            return ConversationResult(success=False, error="upstream error", status_code=500)
        return ConversationResult(posts=self.conversations.get(post_id, []))

    async def fetch_post(self, post_id: str) -> PostResult:
        self.calls.append(("post", post_id))
        if post_id in self.rate_limited_posts:
            return PostResult(success=False, error="HTTP 429: rate limit")
        if post_id in self.failing_posts or post_id not in self.posts:
            return PostResult(success=False, error=f"post {post_id} unavailable", status_code=404)
        return PostResult(post=self.posts[post_id])


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def options(tmp_path) -> ExportOptions:
    return ExportOptions(
        output_dir=str(tmp_path / "out"),
        page_delay_seconds=0,
        download_media=False,
    )
