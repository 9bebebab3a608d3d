"""
Linked posts and long-form articles.

After a bookmark is expanded, two kinds of links in its posts are followed:

- status links (`x.com/<user>/status/<id>`): the linked post is fetched and,
  if it carries an article, the article is saved under `articles/`
- article links (`x.com/i/article/<id>`): the post holding the link is
  re-fetched, since the article id cannot be fetched directly; when no
  article comes back, the link is recorded in errors.json for manual follow-up

Articles already attached to posts in the bookmark are saved without a fetch.
An existing article file is never rewritten.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .checkpointer import write_atomic
from .client import GuardedClient
from .error_log import ErrorLog
from .existence import UNTITLED_ARTICLE, article_filename
from .model import ExpandedBookmark, Post, parse_created_at
from .rate_limits import FetchOutcome

logger = logging.getLogger("bookmarks.articles")

_STATUS_URL = re.compile(r"https?://(?:twitter\.com|x\.com)/[^/\s]+/status/(\d+)")
_ARTICLE_URL = re.compile(r"https?://(?:twitter\.com|x\.com)/i/article/(\d+)")

ARTICLE_URL = "https://x.com/i/article/{}"


def _unique(values) -> List[str]:
    return list(dict.fromkeys(values))


def _quote_chain(post: Post) -> List[Post]:
    chain = []
    while post is not None:
        chain.append(post)
        post = post.quoted_post
    return chain


def _top_level(bookmark: ExpandedBookmark) -> List[Post]:
    return [bookmark.post, *bookmark.continuation, *bookmark.replies]


def linked_status_ids(bookmark: ExpandedBookmark) -> List[str]:
    """Status ids linked from any post of the bookmark, minus posts it already holds."""
    posts = [p for top in _top_level(bookmark) for p in _quote_chain(top)]
    held = {p.id for p in posts}
    return [i for i in _unique(i for p in posts for i in _STATUS_URL.findall(p.text)) if i not in held]


def article_sources(bookmark: ExpandedBookmark) -> List[Tuple[str, List[str]]]:
    """
    (post id, article ids) for every post linking to an article. A link is
    credited to the post whose own text holds it, not to posts quoting it.
    """
    sources: Dict[str, List[str]] = {}
    for top in _top_level(bookmark):
        for post in _quote_chain(top):
            quoted = set(_ARTICLE_URL.findall(post.quoted_post.text)) if post.quoted_post is not None else set()
            own = [i for i in _unique(_ARTICLE_URL.findall(post.text)) if i not in quoted]
            if own and post.id not in sources:
                sources[post.id] = own
    return list(sources.items())


class ArticleWriter:
    def __init__(self, output_dir: str):
        self.output_dir = Path(output_dir)

    def path_for(self, post: Post) -> Path:
        return self.output_dir / article_filename(post.article.title if post.article else None)

    def render(self, post: Post) -> str:
        title = (post.article.title if post.article else None) or UNTITLED_ARTICLE
        byline = f"**@{post.author.username}**" + (f" ({post.author.name})" if post.author.name else "")
        lines = [f"# {title}", "", byline]
        created = parse_created_at(post.created_at)
        if created is not None:
            lines.append(created.date().isoformat())
        lines.extend(["", post.text])
        return "\n".join(lines)

    async def write(self, post: Post) -> Optional[Path]:
        """Save the post's article; None when it has none or the file exists."""
        if post.article is None:
            return None
        path = self.path_for(post)
        if await asyncio.to_thread(path.exists):
            return None
        await asyncio.to_thread(write_atomic, path, self.render(post))
        return path


class ArticleFetcher:
    def __init__(self, client: GuardedClient, writer: ArticleWriter, errors: ErrorLog):
        self.client = client
        self.writer = writer
        self.errors = errors

    async def _save(self, post: Post, found: str) -> bool:
        path = await self.writer.write(post)
        if path is not None:
            logger.info("    %s: %s", found, path.name)
        return path is not None

    async def fetch_for(self, bookmark: ExpandedBookmark) -> FetchOutcome[int]:
        """
        Save every article reachable from the bookmark. Returns the number of
        article files written; a rate limit pauses with nothing half-done
        except articles already saved, which later runs skip.
        """
        written = 0
        for top in _top_level(bookmark):
            for post in _quote_chain(top):
                if post.article is not None and await self._save(post, "Saved article"):
                    written += 1

        for status_id in linked_status_ids(bookmark):
            fetched = await self.client.post(status_id)
            if fetched.is_rate_limited:
                return fetched.paused_as(f"fetching linked post {status_id}")
            if fetched.is_failed:
                logger.warning("    Could not fetch linked post %s: %s", status_id, fetched.error)
                await self.errors.record(status_id, fetched.error or "fetch failed", context="Fetching linked post for potential article")
                continue
            if fetched.value is not None and await self._save(fetched.value, "Found linked article"):
                written += 1

        for post_id, article_ids in article_sources(bookmark):
            fetched = await self.client.post(post_id)
            if fetched.is_rate_limited:
                return fetched.paused_as(f"fetching article post {post_id}")
            if fetched.is_ok and fetched.value is not None and fetched.value.article is not None:
                if await self._save(fetched.value, f"Found article from post {post_id}"):
                    written += 1
                continue
            for article_id in article_ids:
                url = ARTICLE_URL.format(article_id)
                if fetched.is_failed:
                    message = f"Failed to fetch post containing article link: {fetched.error}. Article URL: {url}"
                else:
                    message = f"Post contains article link but no article content was returned. Article URL: {url}"
                logger.warning("    Article link in post %s could not be fetched: %s", post_id, url)
                await self.errors.record(post_id, message, context="Article link that could not be automatically fetched")

        return FetchOutcome.ok(written)
