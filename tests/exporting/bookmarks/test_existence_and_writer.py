import errno

import httpx
import pytest

from exporting.bookmarks.existence import ExistenceIndex, date_folder, date_prefix, sanitize_filename
from exporting.bookmarks.media import LocalMedia, MediaDownloader, download_url, local_filename
from exporting.bookmarks.metadata_cache import MetadataCache
from exporting.bookmarks.model import Article, ExpandedBookmark, MediaItem, parse_created_at
from exporting.bookmarks.writer import (
    REPLIES_HEADING,
    MarkdownWriter,
    extract_hashtags,
    extract_urls,
    split_frontmatter,
)

from conftest import make_post


def test_sanitize_filename():
    assert sanitize_filename("hello world") == "hello-world"
    assert sanitize_filename("what?#[x]") == "whatx"
    assert sanitize_filename("a \u2014 b") == "a-b"
    assert sanitize_filename("…dots...") == "dots"
    assert sanitize_filename("--edge--") == "edge"
    assert sanitize_filename("émoji🙂name") == "mojiname"


def test_created_at_formats():
    iso = parse_created_at("2024-05-01T12:00:00Z")
    legacy = parse_created_at("Wed Oct 10 20:19:24 +0000 2018")
    assert (iso.year, iso.month, iso.day) == (2024, 5, 1)
    assert (legacy.year, legacy.month, legacy.day) == (2018, 10, 10)
    assert parse_created_at("yesterday") is None
    assert parse_created_at(None) is None

    assert date_folder("2024-05-01T12:00:00Z") == "2024/05"
    assert date_prefix("2024-05-01T12:00:00Z") == "2024-05-01"
    assert date_prefix("2024-05-01T12:00:00Z", use_date_folders=True) == "01"
    assert date_prefix(None) == "unknown-date"


@pytest.mark.asyncio
async def test_existence_flat_layout(tmp_path):
    index = ExistenceIndex(str(tmp_path))
    post = make_post("123", author="Alice")
    assert index.filename_for(post) == "2024-05-01-Alice-123.md"
    assert await index.exists("123", post.created_at) is False

    index.path_for(post).write_text("x")
    assert await index.exists("123", post.created_at) is True
    # matched by id, so a renamed handle is still found
    assert await index.locate("123", post.created_at) == tmp_path / "2024-05-01-Alice-123.md"
    # different id with a shared suffix does not match
    assert await index.exists("23", post.created_at) is False
    # unknown date falls back to a broad scan
    assert await index.exists("123") is True


@pytest.mark.asyncio
async def test_existence_date_folders(tmp_path):
    index = ExistenceIndex(str(tmp_path), use_date_folders=True)
    post = make_post("77", author="bob", created_at="2023-12-24T08:00:00Z")
    path = index.path_for(post)
    assert path == tmp_path / "2023" / "12" / "24-bob-77.md"
    path.parent.mkdir(parents=True)
    path.write_text("x")

    assert await index.exists("77", post.created_at) is True
    assert await index.exists("77") is True
    # wrong date narrows the scan to another folder
    assert await index.exists("77", "2022-01-01T00:00:00Z") is False


@pytest.mark.asyncio
async def test_existence_missing_output_dir(tmp_path):
    index = ExistenceIndex(str(tmp_path / "nope"))
    assert await index.exists("1") is False


def test_text_extraction():
    text = "Read https://example.com/a, and #python #python #async (https://example.org/b)"
    assert extract_hashtags(text) == ["python", "async"]
    assert extract_urls(text) == ["https://example.com/a", "https://example.org/b"]


def test_split_frontmatter():
    data, body = split_frontmatter("---\nid: '5'\ntags: [a]\n---\n\nbody\n")
    assert data == {"id": "5", "tags": ["a"]}
    assert body == "body\n"
    assert split_frontmatter("no frontmatter") == (None, "no frontmatter")
    assert split_frontmatter("---\n: [\n---\nbody")[0] is None


def test_media_urls():
    photo = MediaItem(type="photo", url="https://pbs.example.com/media/abc.jpg")
    assert download_url(photo) == "https://pbs.example.com/media/abc.jpg?name=large"
    sized = MediaItem(type="photo", url="https://pbs.example.com/media/abc?format=jpg&name=small")
    assert download_url(sized).endswith("name=large")
    video = MediaItem(type="video", url="https://pbs.example.com/thumb.jpg", video_url="https://video.example.com/v.mp4")
    assert download_url(video) == "https://video.example.com/v.mp4"
    assert local_filename("https://video.example.com/path/v.mp4?tag=1") == "v.mp4"


@pytest.mark.asyncio
async def test_writer_renders_thread_quotes_and_replies(tmp_path):
    index = ExistenceIndex(str(tmp_path))
    writer = MarkdownWriter(index)
    inner = make_post("q2", author="carol", text="innermost")
    quoted = make_post("q1", author="bob", text="quoted text", quoted=inner)
    root = make_post("1", text="root #tag https://example.com", quoted=quoted)
    bookmark = ExpandedBookmark(
        post=root,
        continuation=[make_post("2", reply_to="1", text="second")],
        replies=[make_post("9", author="dave", reply_to="1", text="nice")],
    )

    path = await writer.write(bookmark)
    assert path == index.path_for(root)
    content = path.read_text()

    data, body = split_frontmatter(content)
    assert data["id"] == "1"
    assert data["thread_length"] == 2
    assert data["reply_count"] == 1
    assert data["hashtags"] == ["tag"]
    assert "links" not in data

    assert "## Thread" in body
    assert "### 2/2" in body
    assert "> **@bob**" in body
    assert "> > **@carol**" in body
    assert REPLIES_HEADING in body
    assert "**@dave**: nice" in body

    assert await writer.has_replies(path) is True
    assert await writer.has_frontmatter(path) is True


@pytest.mark.asyncio
async def test_writer_backfill_helpers(tmp_path):
    writer = MarkdownWriter(ExistenceIndex(str(tmp_path)))
    post = make_post("5")
    path = tmp_path / "old.md"
    path.write_text("---\ntitle: mine\n---\n\nold body\n")

    assert await writer.has_replies(path) is False
    assert await writer.has_frontmatter(path) is False

    await writer.append_replies(path, [make_post("6", author="eve", reply_to="5", text="reply")])
    await writer.add_frontmatter(path, post)

    content = path.read_text()
    data, body = split_frontmatter(content)
    assert data["id"] == "5"
    assert data["title"] == "mine"
    assert body.startswith("old body")
    assert "**@eve**: reply" in body
    assert await writer.has_replies(path) is True
    assert await writer.has_frontmatter(path) is True


@pytest.mark.asyncio
async def test_writer_resolves_links_through_cache(tmp_path):
    calls = []

    async def fetch_link(url):
        calls.append(url)
        return {"url": url, "title": "Example"}

    cache = MetadataCache(str(tmp_path))
    writer = MarkdownWriter(ExistenceIndex(str(tmp_path)), cache=cache, link_fetcher=fetch_link)
    await writer.write(ExpandedBookmark(post=make_post("1", text="see https://example.com/x")))
    await writer.write(ExpandedBookmark(post=make_post("2", text="again https://example.com/x")))

    assert calls == ["https://example.com/x"]
    data, _ = split_frontmatter((tmp_path / "2024-05-01-alice-2.md").read_text())
    assert data["links"] == [{"url": "https://example.com/x", "title": "Example"}]


@pytest.mark.asyncio
async def test_media_downloader_fetches_and_reuses(tmp_path):
    hits = []

    def handler(request):
        hits.append(request.url.path)
        if "broken" in request.url.path:
            return httpx.Response(404)
        return httpx.Response(200, content=b"img")

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    downloader = MediaDownloader(str(tmp_path), http=http)
    items = [
        MediaItem(url="https://pbs.example.com/media/a.jpg"),
        MediaItem(url="https://pbs.example.com/media/broken.jpg"),
    ]

    got = await downloader.download(items)
    # failed downloads are dropped, never raised
    assert [m.local_path for m in got] == ["assets/a.jpg"]
    assert (tmp_path / "assets" / "a.jpg").read_bytes() == b"img"

    again = await downloader.download(items[:1])
    assert [m.local_path for m in again] == ["assets/a.jpg"]
    assert len(hits) == 2
    await http.aclose()


class _StaticMedia:
    """Stands in for MediaDownloader: every post has one downloaded photo."""

    async def download(self, items):
        return [LocalMedia(type="photo", local_path="assets/abc.jpg", original_url="https://pbs.example.com/media/abc.jpg")]


def _image_links(content):
    return [line[len("![photo]("):-1] for line in content.splitlines() if line.startswith("![photo](")]


@pytest.mark.asyncio
async def test_date_folder_links_resolve_from_the_file(tmp_path):
    index = ExistenceIndex(str(tmp_path), use_date_folders=True)
    writer = MarkdownWriter(index, media=_StaticMedia())
    (tmp_path / "assets").mkdir()
    (tmp_path / "assets" / "abc.jpg").write_bytes(b"img")

    dated = make_post("1", created_at="2023-02-03T10:00:00Z", article=Article(title="Long Read"))
    undated = make_post("2", created_at=None)

    path = await writer.write(ExpandedBookmark(post=dated))
    assert path == tmp_path / "2023" / "02" / "03-alice-1.md"
    content = path.read_text()
    assert _image_links(content) == ["../../assets/abc.jpg"]
    assert (path.parent / "../../assets/abc.jpg").resolve() == (tmp_path / "assets" / "abc.jpg").resolve()
    assert "[Read full article](../../articles/Long-Read.md)" in content

    path = await writer.write(ExpandedBookmark(post=undated))
    assert path.parent == tmp_path / "unknown-date"
    assert _image_links(path.read_text()) == ["../assets/abc.jpg"]

    flat = MarkdownWriter(ExistenceIndex(str(tmp_path / "flat")), media=_StaticMedia())
    path = await flat.write(ExpandedBookmark(post=undated))
    assert _image_links(path.read_text()) == ["assets/abc.jpg"]


@pytest.mark.asyncio
async def test_writer_leaves_no_partial_file_when_write_fails(tmp_path, monkeypatch):
    index = ExistenceIndex(str(tmp_path))
    writer = MarkdownWriter(index)
    post = make_post("1")
    original_replace = type(tmp_path).replace

    def failing_replace(self, target):
        if str(target).endswith(".md"):
            raise OSError(errno.ENOSPC, "No space left on device")
        return original_replace(self, target)

    monkeypatch.setattr(type(tmp_path), "replace", failing_replace)
    with pytest.raises(OSError):
        await writer.write(ExpandedBookmark(post=post))

    assert await index.locate("1", post.created_at) is None
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_links_cover_the_whole_thread(tmp_path):
    async def fetch_link(url):
        return {"url": url}

    writer = MarkdownWriter(ExistenceIndex(str(tmp_path)), cache=MetadataCache(str(tmp_path)), link_fetcher=fetch_link)
    bookmark = ExpandedBookmark(
        post=make_post("1", text="start https://example.com/a"),
        continuation=[
            make_post("2", reply_to="1", text="more https://example.com/b"),
            make_post("3", reply_to="2", text="again https://example.com/a"),
        ],
    )
    data, _ = split_frontmatter((await writer.write(bookmark)).read_text())
    assert data["links"] == [{"url": "https://example.com/a"}, {"url": "https://example.com/b"}]
