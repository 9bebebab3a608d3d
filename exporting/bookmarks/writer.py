from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from .checkpointer import write_atomic
from .existence import UNTITLED_ARTICLE, ExistenceIndex, article_filename
from .media import LocalMedia, MediaDownloader
from .metadata_cache import Fetcher, MetadataCache
from .model import Article, ExpandedBookmark, Post, parse_created_at

REPLIES_HEADING = "## Replies"
THREAD_HEADING = "## Thread"

_HASHTAG = re.compile(r"#(\w+)")
_URL = re.compile(r"https?://[^\s)>\]]+")

logger = logging.getLogger("bookmarks.writer")


def extract_hashtags(text: str) -> List[str]:
    return list(dict.fromkeys(_HASHTAG.findall(text)))


def extract_urls(text: str) -> List[str]:
    return list(dict.fromkeys(u.rstrip(".,;:!?") for u in _URL.findall(text)))


def split_frontmatter(content: str):
    """Return (frontmatter dict or None, body)."""
    if not content.startswith("---"):
        return None, content
    end = content.find("\n---", 3)
    if end == -1:
        return None, content
    try:
        data = yaml.safe_load(content[4:end]) or {}
    except yaml.YAMLError:
        return None, content
    if not isinstance(data, dict):
        return None, content
    return data, content[end + 4:].lstrip("\n")


def render_frontmatter(data: Dict[str, Any]) -> str:
    clean = {k: v for k, v in data.items() if v not in (None, [], "")}
    return "---\n" + yaml.safe_dump(clean, allow_unicode=True, default_flow_style=False, sort_keys=False) + "---\n"


def _quote_block(post: Post, level: int = 1) -> List[str]:
    prefix = "> " * level
    lines = [f"{prefix}**@{post.author.username}**" + (f" ({post.author.name})" if post.author.name else "")]
    for line in post.text.splitlines() or [""]:
        lines.append(f"{prefix}{line}".rstrip())
    lines.append(f"{prefix}[{post.url}]({post.url})")
    if post.quoted_post is not None:
        lines.append(prefix.rstrip())
        lines.extend(_quote_block(post.quoted_post, level + 1))
    return lines


Linker = Callable[[str], str]


def relative_link(target: str, folder: Path, root: Path) -> str:
    """Link to `target` (a path relative to the output root) from a file in `folder`."""
    return Path(os.path.relpath(root / target, folder)).as_posix()


def _article_block(article: Article, link: Linker) -> List[str]:
    lines = [f"**{article.title or UNTITLED_ARTICLE}**"]
    if article.preview_text:
        lines.extend(["", f"> {article.preview_text}"])
    lines.extend(["", f"[Read full article]({link(article_filename(article.title))})"])
    return lines


def _post_section(post: Post, media: List[LocalMedia], link: Linker) -> List[str]:
    if post.article is not None:
        lines = _article_block(post.article, link) + [""]
    else:
        lines = [post.text, ""]
    for m in media:
        lines.append(f"![{m.type}]({link(m.local_path)})")
    if media:
        lines.append("")
    if post.quoted_post is not None:
        lines.extend(_quote_block(post.quoted_post))
        lines.append("")
    return lines


def replies_section(replies: List[Post]) -> str:
    lines = [REPLIES_HEADING, ""]
    for reply in replies:
        lines.append(f"**@{reply.author.username}**: {reply.text}".rstrip())
        lines.append(f"[{reply.url}]({reply.url})")
        lines.append("")
    return "\n".join(lines)


class MarkdownWriter:
    """
    Writes one markdown file per bookmark, named through the ExistenceIndex
    so that later runs find it again.
    """

    def __init__(
        self,
        index: ExistenceIndex,
        cache: Optional[MetadataCache] = None,
        link_fetcher: Optional[Fetcher] = None,
        media: Optional[MediaDownloader] = None,
    ):
        self.index = index
        self.cache = cache
        self.link_fetcher = link_fetcher
        self.media = media

    async def _links(self, text: str) -> List[Any]:
        if self.cache is None or self.link_fetcher is None:
            return []
        links = []
        for url in extract_urls(text):
            try:
                links.append(await self.cache.get_or_fetch(url, self.link_fetcher))
            except Exception as e:
                logger.warning("Link metadata lookup failed for %s: %s", url, e)
        return links

    async def _media_for(self, post: Post) -> List[LocalMedia]:
        if self.media is None:
            return []
        return await self.media.download(post.media)

    async def frontmatter_for(self, bookmark: ExpandedBookmark) -> Dict[str, Any]:
        post = bookmark.post
        created = parse_created_at(post.created_at)
        return {
            "id": post.id,
            "author": post.author.username,
            "author_name": post.author.name,
            "date": created.strftime("%Y-%m-%d") if created else None,
            "url": post.url,
            "thread_length": len(bookmark.continuation) + 1 if bookmark.continuation else None,
            "reply_count": len(bookmark.replies) or None,
            "media_count": len(post.media) or None,
            "quoted_post": post.quoted_post.url if post.quoted_post else None,
            "hashtags": extract_hashtags(post.text),
            # root and continuation, deduplicated
            "links": await self._links("\n".join([post.text, *(p.text for p in bookmark.continuation)])),
        }

    def _linker(self, path: Path) -> Linker:
        root = self.index.output_dir
        return lambda target: relative_link(target, path.parent, root)

    async def render(self, bookmark: ExpandedBookmark, path: Optional[Path] = None) -> str:
        post = bookmark.post
        link = self._linker(path or self.index.path_for(post))
        parts = [render_frontmatter(await self.frontmatter_for(bookmark))]
        header = f"# @{post.author.username}" + (f" ({post.author.name})" if post.author.name else "")
        body = [header, ""]
        body.extend(_post_section(post, await self._media_for(post), link))
        body.append(f"[Original]({post.url})")
        body.append("")

        if bookmark.continuation:
            total = len(bookmark.continuation) + 1
            body.extend([THREAD_HEADING, ""])
            for n, item in enumerate(bookmark.continuation, start=2):
                body.extend([f"### {n}/{total}", ""])
                body.extend(_post_section(item, await self._media_for(item), link))

        if bookmark.replies:
            body.append(replies_section(bookmark.replies))

        parts.append("\n".join(body).rstrip() + "\n")
        return "\n".join(parts)

    async def write(self, bookmark: ExpandedBookmark) -> Path:
        path = self.index.path_for(bookmark.post)
        content = await self.render(bookmark, path)
        # The existence index trusts any file at this path, so only complete
        # documents may land there.
        await asyncio.to_thread(write_atomic, path, content)
        return path

    # Backfill -----------------------------------------------------------------

    async def has_replies(self, path: Path) -> bool:
        text = await _read(path)
        return text is not None and REPLIES_HEADING in text

    async def has_frontmatter(self, path: Path) -> bool:
        text = await _read(path)
        if text is None:
            return False
        data, _ = split_frontmatter(text)
        return data is not None and "id" in data

    async def append_replies(self, path: Path, replies: List[Post]) -> None:
        text = await _read(path) or ""
        content = text.rstrip() + "\n\n" + replies_section(replies).rstrip() + "\n"
        await asyncio.to_thread(write_atomic, path, content)

    async def add_frontmatter(self, path: Path, post: Post) -> None:
        """
        Prepend generated frontmatter; keys already present in a
        hand-written frontmatter block are kept as they are.
        """
        text = await _read(path) or ""
        existing, body = split_frontmatter(text)
        generated = await self.frontmatter_for(ExpandedBookmark(post=post))
        merged = {**generated, **(existing or {})}
        await asyncio.to_thread(write_atomic, path, render_frontmatter(merged) + "\n" + body)


async def _read(path: Path) -> Optional[str]:
    def _load() -> Optional[str]:
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    return await asyncio.to_thread(_load)
