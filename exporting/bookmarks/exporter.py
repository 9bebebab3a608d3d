"""
Bookmark Exporter

Purpose
- Drives the bookmark page loop one page at a time
- Per bookmark: existence check -> thread expansion -> quote expansion ->
  linked articles -> write
- Persists a checkpoint after every page fetch and every written bookmark
- Treats a rate limit anywhere as a full stop: checkpoint and return, no retry

Resumption
- A persisted page remainder is processed before any new page is fetched
- The remainder always includes the bookmark that was in flight when the
  rate limit hit, and the checkpoint cursor always points past that page
- `previous_run_boundary_id` (first bookmark exported by the last clean run)
  stops the forward scan; rebuild mode ignores it and rescans everything

Result
- ExportResult counts; a rate-limited run is not an error
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from . import metrics
from .articles import ArticleFetcher, ArticleWriter
from .checkpointer import Checkpointer, ExportCheckpoint
from .client import BookmarkClient, GuardedClient
from .error_log import ErrorLog
from .existence import ExistenceIndex
from .media import MediaDownloader
from .metadata_cache import Fetcher, MetadataCache
from .model import ExpandedBookmark, Post
from .options import ExportOptions
from .quotes import QuoteExpander
from .rate_limits import FetchOutcome
from .thread import ThreadExpander
from .writer import MarkdownWriter

logger = logging.getLogger("bookmarks.exporter")

Sleeper = Callable[[float], Awaitable[None]]


class ExportAbortedError(RuntimeError):
    """A bookmark page could not be fetched for a reason other than a rate limit."""


@dataclass
class ExportResult:
    exported_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    backfilled_count: int = 0
    rate_limited: bool = False
    hit_previous_boundary: bool = False
    hit_page_limit: bool = False
    completed: bool = False
    pages_fetched: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class BookmarkExporter:
    def __init__(
        self,
        client: BookmarkClient,
        options: ExportOptions,
        *,
        checkpointer: Optional[Checkpointer] = None,
        errors: Optional[ErrorLog] = None,
        index: Optional[ExistenceIndex] = None,
        cache: Optional[MetadataCache] = None,
        writer: Optional[MarkdownWriter] = None,
        link_fetcher: Optional[Fetcher] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.options = options
        self.client = GuardedClient(client)
        self.checkpointer = checkpointer or Checkpointer(options.output_dir)
        self.errors = errors or ErrorLog(options.output_dir)
        self.index = index or ExistenceIndex(options.output_dir, options.use_date_folders)
        self.cache = cache or MetadataCache(options.output_dir)
        self._media: Optional[MediaDownloader] = None
        if writer is None:
            if options.download_media:
                self._media = MediaDownloader(options.output_dir, concurrency=options.media_concurrency)
            writer = MarkdownWriter(self.index, cache=self.cache, link_fetcher=link_fetcher, media=self._media)
        self.writer = writer
        self.threads = ThreadExpander(self.client)
        self.quotes = QuoteExpander(self.client)
        self.articles: Optional[ArticleFetcher] = None
        if options.fetch_articles:
            self.articles = ArticleFetcher(self.client, ArticleWriter(options.output_dir), self.errors)
        self._sleep = sleep

    # Per-bookmark work -----------------------------------------------------------

    async def _expand_quotes(self, posts: List[Post]) -> FetchOutcome[List[Post]]:
        depth = self.options.effective_quote_depth
        expanded: List[Post] = []
        for post in posts:
            outcome = await self.quotes.expand(post, depth)
            if outcome.is_rate_limited:
                return outcome.paused_as(f"expanding quotes of {post.id}")
            expanded.append(outcome.value)
        return FetchOutcome.ok(expanded)

    async def export_post(self, post: Post) -> FetchOutcome[Path]:
        """
        Expand and write one bookmark. Rate limits come back as an outcome;
        any other exception escapes to the caller as a per-post failure.
        """
        with metrics.measure_post():
            thread = await self.threads.expand(post, self.options.include_replies)
            if thread.is_rate_limited:
                return thread.paused_as(f"expanding thread {post.id}")

            # Replies are written as-is, without quote expansion
            quoted = await self._expand_quotes([post, *thread.value.continuation])
            if quoted.is_rate_limited:
                return quoted

            root, *continuation = quoted.value
            bookmark = ExpandedBookmark(post=root, continuation=continuation, replies=thread.value.replies)
            if self.articles is not None:
                # Before the write: a bookmark file on disk is never revisited
                articles = await self.articles.fetch_for(bookmark)
                if articles.is_rate_limited:
                    return articles
            path = await self.writer.write(bookmark)
            return FetchOutcome.ok(path)

    async def backfill_post(self, post: Post, path: Path) -> FetchOutcome[bool]:
        """
        Rebuild-mode backfills for an already exported bookmark. Each step
        checks the file first, so satisfied bookmarks cost no network call.
        Returns ok(True) when the file was changed.
        """
        changed = False
        if self.options.backfill_replies and not await self.writer.has_replies(path):
            thread = await self.threads.expand(post, include_replies=True)
            if thread.is_rate_limited:
                return thread.paused_as(f"backfilling replies of {post.id}")
            if thread.value.replies:
                await self.writer.append_replies(path, thread.value.replies)
                logger.info("  Backfilled %d replies: %s", len(thread.value.replies), path.name)
                changed = True

        if self.options.backfill_frontmatter and not await self.writer.has_frontmatter(path):
            await self.writer.add_frontmatter(path, post)
            logger.info("  Backfilled frontmatter: %s", path.name)
            changed = True

        return FetchOutcome.ok(changed)

    # Checkpoint helpers ----------------------------------------------------------

    async def _pause(
        self,
        checkpoint: ExportCheckpoint,
        remainder: List[Post],
        next_cursor: Optional[str],
        outcome: FetchOutcome,
        result: ExportResult,
    ) -> ExportResult:
        checkpoint.current_page_remainder = list(remainder) or None
        checkpoint.next_cursor = next_cursor
        await self.checkpointer.save_progress(checkpoint)
        logger.warning("Rate limited during %s (%s). State saved; run again later to resume.", outcome.context, outcome.error)
        result.rate_limited = True
        return result

    async def _record_failure(self, post: Post, exc: Exception, result: ExportResult, context: str) -> None:
        message = f"{type(exc).__name__}: {exc}"
        logger.error("  Error processing %s: %s", post.id, message)
        await self.errors.record(post.id, message, context=context)
        result.error_count += 1
        metrics.inc_posts("failed")

    # Main loop ---------------------------------------------------------------

    async def run(self) -> ExportResult:
        try:
            return await self._run()
        finally:
            if self._media is not None:
                await self._media.close()

    async def _run(self) -> ExportResult:
        opts = self.options
        result = ExportResult()
        Path(opts.output_dir).mkdir(parents=True, exist_ok=True)

        checkpoint = await self.checkpointer.load_progress()

        if opts.rebuild_mode and not checkpoint.rebuild_in_progress:
            # A new rebuild always starts from the top of the list
            checkpoint.clear_pagination()
            checkpoint.rebuild_in_progress = True
            await self.checkpointer.save_progress(checkpoint)
        elif not opts.rebuild_mode and checkpoint.rebuild_in_progress:
            # An interrupted rebuild's cursor means nothing to an incremental run
            checkpoint.clear_pagination()
            await self.checkpointer.save_progress(checkpoint)

        fresh_run = not checkpoint.has_pagination_state
        page_number = checkpoint.current_page_number or 0
        leading_existing = 0

        logger.info(
            "Starting bookmark export%s%s",
            " (rebuild)" if opts.rebuild_mode else "",
            "" if fresh_run else f" (resuming at page {page_number})",
        )

        while True:
            page: List[Post]
            next_cursor: Optional[str]

            if checkpoint.current_page_remainder:
                page = list(checkpoint.current_page_remainder)
                next_cursor = checkpoint.next_cursor
                logger.info("Resuming page %d with %d remaining bookmarks", page_number, len(page))
            else:
                if opts.max_pages is not None and result.pages_fetched >= opts.max_pages:
                    logger.info("Reached max pages (%d) for this run. State saved.", opts.max_pages)
                    result.hit_page_limit = True
                    return result
                if result.pages_fetched > 0 and opts.page_delay_seconds > 0:
                    logger.info("Waiting %.1fs before next page...", opts.page_delay_seconds)
                    await self._sleep(opts.page_delay_seconds)

                logger.info(
                    "Fetching bookmarks page %d%s...",
                    page_number + 1,
                    " (from cursor)" if checkpoint.next_cursor else "",
                )
                fetched = await self.client.bookmark_page(checkpoint.next_cursor)
                if fetched.is_rate_limited:
                    # Cursor still points at the page we failed to fetch
                    return await self._pause(checkpoint, [], checkpoint.next_cursor, fetched, result)
                if fetched.is_failed:
                    await self.checkpointer.save_progress(checkpoint)
                    raise ExportAbortedError(f"Failed to fetch bookmarks: {fetched.error}")

                result.pages_fetched += 1
                page_number += 1
                metrics.set_current_page(page_number)
                page = list(fetched.value.posts)
                next_cursor = fetched.value.next_cursor
                logger.info("  Received %d bookmarks, more available: %s", len(page), "yes" if next_cursor else "no")

                if not page:
                    if next_cursor:
                        checkpoint.next_cursor = next_cursor
                        checkpoint.current_page_number = page_number
                        await self.checkpointer.save_progress(checkpoint)
                        continue
                    logger.info("No more bookmarks to process (empty page, no cursor).")
                    result.completed = True
                    break

                checkpoint.current_page_remainder = list(page)
                checkpoint.next_cursor = next_cursor
                checkpoint.current_page_number = page_number
                await self.checkpointer.save_progress(checkpoint)

            first_page = fresh_run and result.pages_fetched == 1

            for i, post in enumerate(page):
                if not opts.rebuild_mode and post.id == checkpoint.previous_run_boundary_id:
                    logger.info("Hit previously exported bookmark %s, stopping.", post.id)
                    result.hit_previous_boundary = True
                    break

                path = await self.index.locate(post.id, post.created_at)
                if path is not None:
                    logger.debug("Skipping already exported: %s", post.id)
                    result.skipped_count += 1
                    metrics.inc_posts("skipped")

                    if opts.rebuild_mode and (opts.backfill_replies or opts.backfill_frontmatter):
                        try:
                            backfilled = await self.backfill_post(post, path)
                        except Exception as e:
                            await self._record_failure(post, e, result, f"Backfilling bookmark from @{post.author.username}")
                        else:
                            if backfilled.is_rate_limited:
                                return await self._pause(checkpoint, page[i:], next_cursor, backfilled, result)
                            if backfilled.value:
                                result.backfilled_count += 1
                                metrics.inc_posts("backfilled")
                                checkpoint.current_page_remainder = page[i + 1:] or None
                                await self.checkpointer.save_progress(checkpoint)

                    if first_page and i == leading_existing:
                        leading_existing += 1
                        threshold = opts.existing_stop_threshold
                        if not opts.rebuild_mode and threshold is not None and leading_existing >= threshold:
                            logger.info("First %d bookmarks already exported, nothing new to export.", leading_existing)
                            result.hit_previous_boundary = True
                            break
                    continue

                logger.info(
                    "Processing bookmark %d/%d: @%s - %s",
                    i + 1,
                    len(page),
                    post.author.username,
                    post.text[:50].replace("\n", " "),
                )
                try:
                    outcome = await self.export_post(post)
                except Exception as e:
                    await self._record_failure(post, e, result, f"Processing bookmark from @{post.author.username}")
                    checkpoint.current_page_remainder = page[i + 1:] or None
                    await self.checkpointer.save_progress(checkpoint)
                    continue

                if outcome.is_rate_limited:
                    return await self._pause(checkpoint, page[i:], next_cursor, outcome, result)

                logger.info("  Exported: %s", outcome.value.name)
                result.exported_count += 1
                metrics.inc_posts("exported")
                if not opts.rebuild_mode and checkpoint.this_run_boundary_id is None:
                    checkpoint.this_run_boundary_id = post.id
                checkpoint.current_page_remainder = page[i + 1:] or None
                await self.checkpointer.save_progress(checkpoint)

            logger.info(
                "--- Page %d complete | Total: %d exported, %d skipped, %d errors ---",
                page_number,
                result.exported_count,
                result.skipped_count,
                result.error_count,
            )

            if result.hit_previous_boundary:
                break

            if not next_cursor:
                logger.info("No more pages available.")
                result.completed = True
                break

            checkpoint.next_cursor = next_cursor
            checkpoint.current_page_remainder = None
            await self.checkpointer.save_progress(checkpoint)

        await self.checkpointer.finish_run(
            checkpoint,
            completed_full_scan=result.completed,
            promote_boundary=not opts.rebuild_mode,
        )
        return result


async def run_export(client: BookmarkClient, options: ExportOptions, **kwargs) -> ExportResult:
    return await BookmarkExporter(client, options, **kwargs).run()
