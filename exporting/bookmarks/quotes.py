from __future__ import annotations

import logging

from .client import GuardedClient
from .model import Post
from .options import clamp_quote_depth
from .rate_limits import FetchOutcome

logger = logging.getLogger("bookmarks.quotes")


class QuoteExpander:
    """
    Replaces embedded quote summaries with fully fetched posts, recursively.

    Depth counts the post itself: depth 1 keeps the embedded summary as-is,
    depth 2 fetches the quoted post (with its own embedded summary), and so on.
    """

    def __init__(self, client: GuardedClient):
        self.client = client

    async def expand(self, post: Post, remaining_depth: int) -> FetchOutcome[Post]:
        return await self._expand(post, clamp_quote_depth(remaining_depth))

    async def _expand(self, post: Post, remaining_depth: int) -> FetchOutcome[Post]:
        quoted = post.quoted_post
        if remaining_depth <= 1 or quoted is None:
            return FetchOutcome.ok(post)

        fetched = await self.client.post(quoted.id)
        if fetched.is_rate_limited:
            return fetched.paused_as(f"expanding quoted post {quoted.id}")
        if fetched.is_failed or fetched.value is None:
            logger.warning("Could not fetch quoted post %s: %s", quoted.id, fetched.error)
            return FetchOutcome.ok(post)

        nested = await self._expand(fetched.value, remaining_depth - 1)
        if nested.is_rate_limited:
            return nested
        return FetchOutcome.ok(post.model_copy(update={"quoted_post": nested.value}))
