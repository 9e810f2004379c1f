import hashlib

import httpx
import orjson
import pytest

from Inkport.errors import MediaUploadError
from Inkport.media import MediaCache, MediaPipeline, is_remote
from Inkport.metrics import get_counter
from Inkport.storage import HttpMediaStorage, LocalMediaStorage, sniff_extension

PNG = b"\x89PNG\r\n\x1a\n" + b"pixels" * 10
JPG = b"\xff\xd8\xff" + b"other-bytes" * 10


class _RecordingStorage:
    def __init__(self, fail_times: int = 0) -> None:
        self.uploads: list[tuple[bytes, str]] = []
        self.fail_times = fail_times

    async def upload(self, data: bytes, folder: str) -> str:
        if self.fail_times:
            self.fail_times -= 1
            raise MediaUploadError("storage hiccup")
        self.uploads.append((data, folder))
        return f"https://store.example.com/{folder}/{hashlib.sha256(data).hexdigest()[:8]}"

    async def aclose(self) -> None:
        return None


def _client(routes: dict[str, tuple[int, bytes]], hits: list[str]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        hits.append(url)
        status, body = routes.get(url, (404, b""))
        return httpx.Response(status, content=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _pipeline(storage, client, **kw) -> MediaPipeline:
    kw.setdefault("retry_backoff", 0)
    return MediaPipeline(storage, MediaCache(), client=client, **kw)


@pytest.mark.asyncio
async def test_identical_bytes_from_two_urls_upload_once():
    hits: list[str] = []
    storage = _RecordingStorage()
    client = _client(
        {"https://a.example.com/1.png": (200, PNG), "https://b.example.com/x.png": (200, PNG)},
        hits,
    )
    async with _pipeline(storage, client) as media:
        first = await media.relocate("https://a.example.com/1.png", "covers")
        second = await media.relocate("https://b.example.com/x.png", "covers")

    assert first == second
    assert len(storage.uploads) == 1
    assert media.cache.duplicates_avoided == 1
    assert get_counter("media.hit_hash") == 1
    assert len(media.cache.by_url) == 2
    assert len(media.cache.by_hash) == 1


@pytest.mark.asyncio
async def test_url_cache_hit_does_no_network_io():
    hits: list[str] = []
    storage = _RecordingStorage()
    client = _client({}, hits)
    cache = MediaCache(by_url={"https://a.example.com/1.png": "https://store/1.png"})
    media = MediaPipeline(storage, cache, client=client)

    assert await media.relocate("https://a.example.com/1.png", "covers") == "https://store/1.png"
    assert hits == []
    assert media.cache.hits == 1
    await media.aclose()


@pytest.mark.asyncio
async def test_concurrent_same_url_downloads_once():
    hits: list[str] = []
    storage = _RecordingStorage()
    client = _client({"https://a.example.com/p.png": (200, PNG)}, hits)
    media = _pipeline(storage, client, concurrency=5)

    out = await media.relocate_many(["https://a.example.com/p.png"] * 6, "pages")

    assert len(set(out)) == 1
    assert hits == ["https://a.example.com/p.png"]
    assert len(storage.uploads) == 1
    await media.aclose()


@pytest.mark.asyncio
async def test_client_error_falls_back_without_retry():
    hits: list[str] = []
    storage = _RecordingStorage()
    client = _client({"https://a.example.com/gone.png": (404, b"")}, hits)
    media = _pipeline(storage, client, retry_attempts=3)

    url = "https://a.example.com/gone.png"
    assert await media.relocate(url, "covers") == url
    assert len(hits) == 1
    assert media.cache.fallbacks == 1
    assert get_counter("media.fallback") == 1
    # Fallbacks are not cached
    assert url not in media.cache.by_url
    await media.aclose()


@pytest.mark.asyncio
async def test_server_error_retried_then_falls_back():
    hits: list[str] = []
    storage = _RecordingStorage()
    client = _client({"https://a.example.com/busy.png": (503, b"")}, hits)
    media = _pipeline(storage, client, retry_attempts=3)

    url = "https://a.example.com/busy.png"
    assert await media.relocate(url, "covers") == url
    assert len(hits) == 3
    await media.aclose()


@pytest.mark.asyncio
async def test_timeout_is_a_recoverable_fallback():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    media = _pipeline(_RecordingStorage(), client, retry_attempts=2)

    url = "https://slow.example.com/a.png"
    assert await media.relocate(url, "covers") == url
    await media.aclose()


@pytest.mark.asyncio
async def test_upload_retried_on_transient_failure():
    hits: list[str] = []
    storage = _RecordingStorage(fail_times=1)
    client = _client({"https://a.example.com/1.jpg": (200, JPG)}, hits)
    media = _pipeline(storage, client, retry_attempts=3)

    stored = await media.relocate("https://a.example.com/1.jpg", "covers")

    assert stored.startswith("https://store.example.com/covers/")
    assert len(storage.uploads) == 1
    await media.aclose()


@pytest.mark.asyncio
async def test_local_paths_and_disabled_pipeline_pass_through():
    hits: list[str] = []
    storage = _RecordingStorage()
    media = _pipeline(storage, _client({}, hits))
    assert await media.relocate("/uploads/already-local.png", "covers") == "/uploads/already-local.png"
    assert await media.relocate(None, "covers") is None
    await media.aclose()

    off = _pipeline(storage, _client({}, hits), enabled=False)
    urls = ["https://a.example.com/1.png", "https://a.example.com/2.png"]
    assert await off.relocate_many(urls, "pages") == urls
    assert hits == []
    await off.aclose()


@pytest.mark.asyncio
async def test_relocate_many_keeps_page_order():
    hits: list[str] = []
    pages = {f"https://cdn.example.com/{i}.png": (200, PNG + bytes([i])) for i in range(8)}
    storage = _RecordingStorage()
    media = _pipeline(storage, _client(pages, hits), concurrency=3)

    out = await media.relocate_many(list(pages), "pages")

    expected = [
        f"https://store.example.com/pages/{hashlib.sha256(PNG + bytes([i])).hexdigest()[:8]}"
        for i in range(8)
    ]
    assert out == expected
    await media.aclose()


def test_cache_persists_between_runs(tmp_path):
    cache = MediaCache()
    cache.remember("https://a/1.png", "h1", "/uploads/covers/h1.png")
    path = tmp_path / "state" / "media-cache.json"
    cache.save(path)

    again = MediaCache.load(path)
    assert again.by_url == {"https://a/1.png": "/uploads/covers/h1.png"}
    assert again.by_hash == {"h1": "/uploads/covers/h1.png"}

    assert MediaCache.load(tmp_path / "missing.json").by_url == {}
    (tmp_path / "junk.json").write_bytes(b"{nope")
    assert MediaCache.load(tmp_path / "junk.json").by_hash == {}


def test_cache_stats():
    cache = MediaCache(hits=3, misses=1, duplicates_avoided=2)
    stats = cache.stats()
    assert stats["hit_rate"] == 0.75
    assert stats["duplicates_avoided"] == 2


def test_is_remote():
    assert is_remote("https://x/y.png")
    assert is_remote("HTTP://x/y.png")
    assert not is_remote("/uploads/y.png")
    assert not is_remote("")


@pytest.mark.asyncio
async def test_local_storage_is_content_addressed(tmp_path):
    storage = LocalMediaStorage(tmp_path / "uploads", "/uploads/")

    url1 = await storage.upload(PNG, "episodes/solo-leveling")
    url2 = await storage.upload(PNG, "episodes/solo-leveling")

    digest = hashlib.sha256(PNG).hexdigest()
    assert url1 == url2 == f"/uploads/episodes/solo-leveling/{digest}.png"
    assert (tmp_path / "uploads" / "episodes" / "solo-leveling" / f"{digest}.png").read_bytes() == PNG


@pytest.mark.asyncio
async def test_local_storage_rejects_path_escape(tmp_path):
    storage = LocalMediaStorage(tmp_path / "uploads")
    url = await storage.upload(JPG, "../../etc")
    assert url.startswith("/uploads/etc/")
    assert not (tmp_path / "etc").exists()


@pytest.mark.asyncio
async def test_http_storage_multipart_upload():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = request.content
        return httpx.Response(200, content=orjson.dumps({"url": "https://ik.example.com/a.png"}))

    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), headers={"Authorization": "Bearer k"}
    )
    storage = HttpMediaStorage("https://upload.example.com/files", client=client)

    assert await storage.upload(PNG, "covers") == "https://ik.example.com/a.png"
    assert b'name="folder"' in seen["body"]
    assert b"/covers" in seen["body"]
    assert seen["auth"] == "Bearer k"
    await client.aclose()


@pytest.mark.asyncio
async def test_http_storage_size_limit_and_bad_reply():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'{"id": 1}')

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    storage = HttpMediaStorage("https://upload.example.com/files", max_bytes=10, client=client)

    with pytest.raises(MediaUploadError) as ei:
        await storage.upload(PNG, "covers")
    assert ei.value.retryable is False

    storage.max_bytes = 10_000
    with pytest.raises(MediaUploadError):
        await storage.upload(PNG, "covers")
    await client.aclose()


def test_sniff_extension():
    assert sniff_extension(PNG) == "png"
    assert sniff_extension(JPG) == "jpg"
    assert sniff_extension(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "webp"
    assert sniff_extension(b"plain") == "bin"


@pytest.mark.asyncio
async def test_declared_oversize_rejected_without_reading_body():
    hits: list[str] = []
    storage = _RecordingStorage()
    client = _client({"https://a.example.com/huge.png": (200, PNG * 50)}, hits)
    media = _pipeline(storage, client, max_bytes=64, retry_attempts=3)

    url = "https://a.example.com/huge.png"
    assert await media.relocate(url, "covers") == url
    # Oversize is permanent, so no retries
    assert len(hits) == 1
    assert storage.uploads == []
    assert media.cache.fallbacks == 1
    await media.aclose()


@pytest.mark.asyncio
async def test_undeclared_oversize_stops_reading_early():
    produced: list[int] = []

    async def body():
        for i in range(100):
            produced.append(i)
            yield b"\x89PNG\r\n\x1a\n"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    storage = _RecordingStorage()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    media = _pipeline(storage, client, max_bytes=20)

    url = "https://a.example.com/endless.png"
    assert await media.relocate(url, "covers") == url
    assert len(produced) < 10
    assert storage.uploads == []
    await media.aclose()
