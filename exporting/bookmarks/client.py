from __future__ import annotations

import logging
from typing import List, Optional, Protocol

from pydantic import BaseModel, Field

from . import metrics
from .model import Post
from .rate_limits import FetchOutcome, FetchStatus, classify_exception, classify_failure

logger = logging.getLogger("bookmarks.client")


# Responses from the platform client ------------------------------------------


class BookmarkPage(BaseModel):
    posts: List[Post] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    success: bool = True
    error: Optional[str] = None
    status_code: Optional[int] = None
    rate_limited: Optional[bool] = None


class ConversationResult(BaseModel):
    posts: List[Post] = Field(default_factory=list)
    success: bool = True
    error: Optional[str] = None
    status_code: Optional[int] = None
    rate_limited: Optional[bool] = None


class PostResult(BaseModel):
    post: Optional[Post] = None
    success: bool = True
    error: Optional[str] = None
    status_code: Optional[int] = None
    rate_limited: Optional[bool] = None


class BookmarkClient(Protocol):
    """
    Platform client collaborator. Authentication, transport and response
    parsing live behind this interface.
    """

    async def fetch_bookmark_page(self, cursor: Optional[str] = None) -> BookmarkPage: ...

    async def fetch_conversation(self, post_id: str) -> ConversationResult: ...

    async def fetch_post(self, post_id: str) -> PostResult: ...


# Guarded adapter ---------------------------------------------------------------


class GuardedClient:
    """
    Wraps a BookmarkClient so that every call returns a FetchOutcome.
    Exceptions raised by the collaborator and unsuccessful responses are
    both classified into RATE_LIMITED or FAILED.
    """

    def __init__(self, client: BookmarkClient):
        self._client = client

    def _unsuccessful(self, endpoint: str, context: str, resp) -> FetchOutcome:
        message = resp.error or f"{endpoint} failed"
        status = classify_failure(message, status_code=resp.status_code, rate_limited=resp.rate_limited)
        if status is FetchStatus.RATE_LIMITED:
            metrics.inc_rate_limit_pause(endpoint)
            return FetchOutcome.rate_limited(message, context)
        return FetchOutcome.failed(message, context)

    def _raised(self, endpoint: str, context: str, exc: Exception) -> FetchOutcome:
        status = classify_exception(exc)
        logger.debug("%s call raised (%s): %s", endpoint, status.value, exc)
        if status is FetchStatus.RATE_LIMITED:
            metrics.inc_rate_limit_pause(endpoint)
            return FetchOutcome.rate_limited(str(exc), context)
        return FetchOutcome.failed(f"{type(exc).__name__}: {exc}", context)

    async def bookmark_page(self, cursor: Optional[str]) -> FetchOutcome[BookmarkPage]:
        context = "fetching bookmarks"
        metrics.inc_request("bookmarks")
        try:
            resp = await self._client.fetch_bookmark_page(cursor)
        except Exception as e:
            return self._raised("bookmarks", context, e)
        if not resp.success:
            return self._unsuccessful("bookmarks", context, resp)
        return FetchOutcome.ok(resp)

    async def conversation(self, post_id: str) -> FetchOutcome[List[Post]]:
        context = f"expanding thread {post_id}"
        metrics.inc_request("conversation")
        try:
            resp = await self._client.fetch_conversation(post_id)
        except Exception as e:
            return self._raised("conversation", context, e)
        if not resp.success:
            return self._unsuccessful("conversation", context, resp)
        return FetchOutcome.ok(list(resp.posts))

    async def post(self, post_id: str) -> FetchOutcome[Post]:
        context = f"fetching post {post_id}"
        metrics.inc_request("post")
        try:
            resp = await self._client.fetch_post(post_id)
        except Exception as e:
            return self._raised("post", context, e)
        if not resp.success:
            return self._unsuccessful("post", context, resp)
        if resp.post is None:
            return FetchOutcome.failed(f"post {post_id} not returned", context)
        return FetchOutcome.ok(resp.post)
