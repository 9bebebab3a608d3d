from .model import Article, Author, MediaItem, Post, ExpandedThread, ExpandedBookmark
from .options import ExportOptions, MAX_QUOTE_DEPTH, clamp_quote_depth
from .rate_limits import FetchOutcome, FetchStatus, classify_failure, looks_rate_limited
from .client import (
    BookmarkClient,
    BookmarkPage,
    ConversationResult,
    PostResult,
    GuardedClient,
)
from .checkpointer import Checkpointer, ExportCheckpoint, write_atomic
from .error_log import ErrorLog, ExportError
from .existence import ExistenceIndex, sanitize_filename
from .thread import ThreadExpander
from .quotes import QuoteExpander
from .metadata_cache import MetadataCache, CacheEntry
from .media import MediaDownloader, LocalMedia
from .writer import MarkdownWriter
from .articles import ArticleFetcher, ArticleWriter
from .exporter import BookmarkExporter, ExportResult, ExportAbortedError, run_export
