#!/usr/bin/env python3
"""
Export bookmarks to markdown

Purpose
- Thin driver: builds ExportOptions from env knobs + flags and runs one
  BookmarkExporter invocation against the output directory
- Run it again after a rate-limit pause; it resumes where it stopped

Client
- The platform client is supplied by a factory named in BOOKMARKS_CLIENT_FACTORY
  ("package.module:callable"). The callable takes no arguments and returns an
  object implementing exporting.bookmarks.BookmarkClient (or an awaitable of one).

Env knobs
- BOOKMARKS_CLIENT_FACTORY: required for exporting
- BOOKMARKS_OUTPUT_DIR: ./bookmarks
- BOOKMARKS_QUOTE_DEPTH: 3  ("unlimited" clamps to 20)
- BOOKMARKS_MAX_PAGES: unset (no per-invocation cap)
- BOOKMARKS_PAGE_DELAY: 2.0 seconds between pages
- BOOKMARKS_DATE_FOLDERS / BOOKMARKS_REBUILD / BOOKMARKS_BACKFILL_REPLIES /
  BOOKMARKS_BACKFILL_FRONTMATTER / BOOKMARKS_INCLUDE_REPLIES: true/false
- BOOKMARKS_EXISTING_STOP_THRESHOLD: unset (disabled)
- BOOKMARKS_DOWNLOAD_MEDIA / BOOKMARKS_FETCH_ARTICLES: true
- BOOKMARKS_MEDIA_CONCURRENCY: 4 parallel downloads
- BOOKMARKS_PROM_PORT: unset (no metrics endpoint)

Exit status
- 0: completed, stopped at the previous export, hit max pages, or rate limited
- 1: the run aborted (bookmark page failure, state could not be written)
"""

import argparse
import asyncio
import importlib
import inspect
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

# Ensure repo root in sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv
from prometheus_client import start_http_server

from exporting.bookmarks.checkpointer import Checkpointer
from exporting.bookmarks.error_log import ErrorLog
from exporting.bookmarks.exporter import BookmarkExporter, ExportAbortedError, ExportResult
from exporting.bookmarks.options import ExportOptions

logger = logging.getLogger("bookmarks.cli")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Export bookmarks, with threads and quotes, to markdown.")
    p.add_argument("output_dir", nargs="?", default=None, help="Output directory (default: $BOOKMARKS_OUTPUT_DIR)")
    p.add_argument("--quote-depth", default=None, help="Quoted post depth, or 'unlimited'")
    p.add_argument("--max-pages", type=int, default=None, help="Stop after this many pages per invocation")
    p.add_argument("--no-replies", action="store_true", help="Do not collect other users' replies")
    p.add_argument("--date-folders", action="store_true", help="Organize files into yyyy/mm folders")
    p.add_argument("--rebuild", action="store_true", help="Rescan all bookmarks, ignoring the previous-run boundary")
    p.add_argument("--backfill-replies", action="store_true", help="With --rebuild: add missing replies sections")
    p.add_argument("--backfill-frontmatter", action="store_true", help="With --rebuild: add missing frontmatter")
    p.add_argument("--no-media", action="store_true", help="Do not download media")
    p.add_argument("--no-articles", action="store_true", help="Do not follow linked posts and articles")
    p.add_argument("--status", action="store_true", help="Print the saved checkpoint and error count, then exit")
    p.add_argument("--reset-pagination", action="store_true", help="Forget the saved cursor/page and exit")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return p.parse_args(argv)


def _build_options(args: argparse.Namespace) -> ExportOptions:
    return ExportOptions.from_env(
        output_dir=str(Path(args.output_dir).resolve()) if args.output_dir else None,
        quote_depth=args.quote_depth,
        max_pages=args.max_pages,
        include_replies=False if args.no_replies else None,
        use_date_folders=True if args.date_folders else None,
        rebuild_mode=True if args.rebuild else None,
        backfill_replies=True if args.backfill_replies else None,
        backfill_frontmatter=True if args.backfill_frontmatter else None,
        download_media=False if args.no_media else None,
        fetch_articles=False if args.no_articles else None,
    )


async def _load_client() -> Any:
    target = os.environ.get("BOOKMARKS_CLIENT_FACTORY", "")
    if ":" not in target:
        raise SystemExit("BOOKMARKS_CLIENT_FACTORY must be set to 'package.module:callable'")
    module_name, attr = target.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    client = factory()
    if inspect.isawaitable(client):
        client = await client
    return client


async def _print_status(options: ExportOptions) -> None:
    checkpoint = await Checkpointer(options.output_dir).load_progress()
    errors = await ErrorLog(options.output_dir).load()
    state = checkpoint.model_dump(mode="json", exclude_none=True)
    remainder = state.pop("current_page_remainder", None)
    if remainder:
        state["current_page_remainder"] = f"{len(remainder)} bookmarks"
    print(json.dumps(state, indent=2))
    print(f"Errors logged: {len(errors)}")


def _print_summary(result: ExportResult) -> None:
    print("")
    if result.rate_limited:
        print("=== Export Paused (Rate Limited) ===")
    elif result.hit_page_limit:
        print("=== Export Paused (Max Pages Reached) ===")
    else:
        print("=== Export Complete ===")
    print(f"Exported: {result.exported_count}")
    print(f"Skipped (already exists): {result.skipped_count}")
    if result.backfilled_count:
        print(f"Backfilled: {result.backfilled_count}")
    print(f"Errors: {result.error_count}")
    if result.hit_previous_boundary:
        print("Stopped at previously exported bookmark.")
    if result.error_count:
        print("See errors.json in the output directory for bookmarks to reprocess.")
    if result.rate_limited or result.hit_page_limit:
        print("\nRun again later to resume from where you left off.")


async def main(argv: Optional[list] = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    _setup_logging(args.verbose)
    options = _build_options(args)

    if args.status:
        await _print_status(options)
        return 0
    if args.reset_pagination:
        await Checkpointer(options.output_dir).clear_pagination()
        print(f"[export_bookmarks] Pagination state cleared in {options.output_dir}")
        return 0

    prom_port = os.environ.get("BOOKMARKS_PROM_PORT")
    if prom_port:
        try:
            start_http_server(int(prom_port))
            print(f"[export_bookmarks] Prometheus metrics on :{prom_port}")
        except Exception as e:
            print(f"[export_bookmarks] WARN: failed to start Prometheus server: {e}")

    print(f"[export_bookmarks] Output directory: {options.output_dir}")
    print(f"[export_bookmarks] Quote depth: {options.effective_quote_depth}")

    client = await _load_client()
    try:
        result = await BookmarkExporter(client, options).run()
    except ExportAbortedError as e:
        logger.error("Export failed: %s", e)
        print("State has been saved. Run again to resume.", file=sys.stderr)
        return 1
    except OSError as e:
        logger.error("Could not persist export state: %s", e)
        return 1

    _print_summary(result)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("[export_bookmarks] KeyboardInterrupt; exiting.")
        sys.exit(130)
