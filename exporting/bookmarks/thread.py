from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set

from .client import GuardedClient
from .model import ExpandedThread, Post
from .rate_limits import FetchOutcome

logger = logging.getLogger("bookmarks.thread")


class ThreadExpander:
    """
    Walks the root author's chain of self-replies one conversation query at
    a time and, optionally, collects other users' direct replies to it.
    """

    def __init__(self, client: GuardedClient):
        self.client = client

    async def expand(self, root: Post, include_replies: bool) -> FetchOutcome[ExpandedThread]:
        author = root.handle
        continuation: List[Post] = []
        seen: Set[str] = {root.id}
        candidates: Dict[str, Post] = {}

        tip = root.id
        first_call = True

        while True:
            outcome = await self.client.conversation(tip)
            if outcome.is_rate_limited:
                return outcome.paused_as(f"expanding thread {root.id}")
            if outcome.is_failed:
                logger.warning("Conversation query failed for %s: %s", tip, outcome.error)
                break

            posts = outcome.value or []
            if not posts:
                break

            next_post: Optional[Post] = None
            for post in posts:
                if post.id == tip:
                    continue
                if next_post is None and post.handle == author and post.in_reply_to_id == tip:
                    next_post = post
                elif first_call and post.id not in candidates:
                    candidates[post.id] = post

            first_call = False

            if next_post is None or next_post.id in seen:
                break
            continuation.append(next_post)
            seen.add(next_post.id)
            tip = next_post.id

        if not include_replies:
            return FetchOutcome.ok(ExpandedThread(continuation=continuation, replies=[]))

        # The conversation includes ancestors and the author's own posts; keep
        # only other users' direct replies to the root or its continuation.
        replies = [
            post
            for post in candidates.values()
            if post.id not in seen
            and post.in_reply_to_id in seen
            and post.handle != author
        ]
        return FetchOutcome.ok(ExpandedThread(continuation=continuation, replies=replies))
