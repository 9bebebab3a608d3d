from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Gauges
current_page = Gauge(
    "bookmarks_current_page",
    "Bookmark page number currently being processed",
)

# Counters
requests_total = Counter(
    "bookmarks_requests_total",
    "Client requests issued, by endpoint",
    labelnames=("endpoint",),
)

posts_total = Counter(
    "bookmarks_posts_total",
    "Bookmarks handled, by outcome (exported/skipped/failed/backfilled)",
    labelnames=("outcome",),
)

rate_limit_pauses_total = Counter(
    "bookmarks_rate_limit_pauses_total",
    "Runs paused by a rate limit, by the endpoint that hit it",
    labelnames=("endpoint",),
)

# Histograms
post_processing_seconds = Histogram(
    "bookmarks_post_processing_seconds",
    "Time spent expanding and writing one bookmark",
    buckets=(0.1, 0.3, 0.7, 1.5, 3.0, 6.0, 12.0, 24.0, 48.0),
)


def inc_request(endpoint: str) -> None:
    try:
        requests_total.labels(endpoint=endpoint).inc()
    except Exception:
        pass


def inc_posts(outcome: str, n: int = 1) -> None:
    try:
        posts_total.labels(outcome=outcome).inc(n)
    except Exception:
        pass


def inc_rate_limit_pause(endpoint: str) -> None:
    try:
        rate_limit_pauses_total.labels(endpoint=endpoint).inc()
    except Exception:
        pass


def set_current_page(page: int) -> None:
    try:
        current_page.set(page)
    except Exception:
        pass


class PostTimer:
    def __enter__(self):
        self._timer = post_processing_seconds.time()
        self._timer.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb):
        if hasattr(self, "_timer"):
            self._timer.__exit__(exc_type, exc, tb)


def measure_post():
    return PostTimer()
