"""Remote media relocation with URL and content-hash deduplication.

Per URL: exact-URL cache, download (bounded retries), sha256, hash cache,
upload, then remember both mappings. Any failure degrades to the original URL
so the owning record is still written.
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import orjson
import structlog

from Inkport.config import Settings
from Inkport.errors import MediaFetchError, MediaUploadError
from Inkport.metrics import inc_counter, observe_histogram
from Inkport.pool import KeyedLocks, retry_async, run_bounded
from Inkport.storage import MediaStorage, storage_from_settings

log = structlog.get_logger()

CACHE_FORMAT_VERSION = 1


def is_remote(url: str | None) -> bool:
    return bool(url) and str(url).lower().startswith(("http://", "https://"))


@dataclass
class MediaCache:
    """Run-scoped dedup maps, optionally persisted between runs."""

    by_url: dict[str, str] = field(default_factory=dict)
    by_hash: dict[str, str] = field(default_factory=dict)
    hits: int = 0
    misses: int = 0
    duplicates_avoided: int = 0
    fallbacks: int = 0

    def remember(self, source_url: str, content_hash: str, stored_url: str) -> None:
        self.by_url[source_url] = stored_url
        self.by_hash.setdefault(content_hash, stored_url)

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "url_cache_size": len(self.by_url),
            "hash_cache_size": len(self.by_hash),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
            "duplicates_avoided": self.duplicates_avoided,
            "fallbacks": self.fallbacks,
        }

    def save(self, path: str | Path) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": CACHE_FORMAT_VERSION,
            "by_url": self.by_url,
            "by_hash": self.by_hash,
        }
        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS))
        tmp.replace(p)
        log.info("media.cache.saved", path=str(p), urls=len(self.by_url), hashes=len(self.by_hash))

    @classmethod
    def load(cls, path: str | Path) -> MediaCache:
        p = Path(path)
        if not p.exists():
            return cls()
        try:
            data = orjson.loads(p.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            log.warning("media.cache.unreadable", path=str(p), error=str(exc))
            return cls()
        if not isinstance(data, dict) or data.get("version") != CACHE_FORMAT_VERSION:
            log.warning("media.cache.unsupported", path=str(p))
            return cls()
        cache = cls(
            by_url=dict(data.get("by_url") or {}),
            by_hash=dict(data.get("by_hash") or {}),
        )
        log.info("media.cache.loaded", path=str(p), urls=len(cache.by_url))
        return cache


class MediaPipeline:
    def __init__(
        self,
        storage: MediaStorage,
        cache: MediaCache | None = None,
        *,
        enabled: bool = True,
        concurrency: int = 5,
        timeout: float = 15.0,
        retry_attempts: int = 3,
        retry_backoff: float = 0.5,
        max_bytes: int = 25 * 1024 * 1024,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.storage = storage
        self.cache = cache if cache is not None else MediaCache()
        self.enabled = enabled
        self.concurrency = concurrency
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.max_bytes = max_bytes
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._url_locks = KeyedLocks()
        self._hash_locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        cache: MediaCache | None = None,
        *,
        enabled: bool = True,
        concurrency: int | None = None,
    ) -> MediaPipeline:
        return cls(
            storage_from_settings(settings),
            cache,
            enabled=enabled,
            concurrency=concurrency or settings.media_concurrency,
            timeout=settings.media_timeout_seconds,
            retry_attempts=settings.media_retry_attempts,
            retry_backoff=settings.media_retry_backoff_seconds,
            max_bytes=settings.media_max_bytes,
        )

    async def __aenter__(self) -> MediaPipeline:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
        await self.storage.aclose()

    async def _download(self, url: str) -> bytes:
        """Stream ``url`` into memory, giving up as soon as it passes ``max_bytes``."""
        try:
            async with self._client.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    # Client errors will not change on retry; 429 and 5xx might
                    retryable = resp.status_code == 429 or resp.status_code >= 500
                    raise MediaFetchError(
                        f"HTTP {resp.status_code} for {url}", retryable=retryable
                    )
                declared = resp.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise MediaFetchError(
                        f"{url} declares {declared} bytes, over {self.max_bytes}",
                        retryable=False,
                    )
                chunks: list[bytes] = []
                total = 0
                async for chunk in resp.aiter_bytes():
                    total += len(chunk)
                    if total > self.max_bytes:
                        raise MediaFetchError(
                            f"{url} exceeds {self.max_bytes} bytes", retryable=False
                        )
                    chunks.append(chunk)
        except httpx.TimeoutException as exc:
            raise MediaFetchError(f"timed out fetching {url}") from exc
        except httpx.HTTPError as exc:
            raise MediaFetchError(f"cannot fetch {url}: {exc}") from exc
        data = b"".join(chunks)
        if not data:
            raise MediaFetchError(f"empty body for {url}", retryable=False)
        return data

    async def relocate(self, url: str | None, folder: str) -> str | None:
        """Return the stored URL for ``url``, or ``url`` itself on any failure."""
        if not url or not self.enabled or not is_remote(url):
            return url

        stored = self.cache.by_url.get(url)
        if stored is not None:
            self.cache.hits += 1
            inc_counter("media.hit_url")
            log.debug("media.cache.hit_url", url=url)
            return stored

        async with self._url_locks.hold(url):
            # A concurrent caller may have finished the same URL
            stored = self.cache.by_url.get(url)
            if stored is not None:
                self.cache.hits += 1
                inc_counter("media.hit_url")
                return stored
            start = time.perf_counter()
            try:
                data = await retry_async(
                    lambda: self._download(url),
                    attempts=self.retry_attempts,
                    base_delay=self.retry_backoff,
                    retry_on=(MediaFetchError,),
                    should_retry=lambda e: getattr(e, "retryable", True),
                    label="media.download",
                )
                digest = hashlib.sha256(data).hexdigest()
                stored = await self._store_unique(data, digest, folder)
                self.cache.remember(url, digest, stored)
            except (MediaFetchError, MediaUploadError) as exc:
                self.cache.fallbacks += 1
                inc_counter("media.fallback")
                log.warning("media.fallback", url=url, kind=exc.kind, error=str(exc))
                return url
            finally:
                observe_histogram("media.relocate_ms", int((time.perf_counter() - start) * 1000))
            return stored

    async def _store_unique(self, data: bytes, digest: str, folder: str) -> str:
        async with self._hash_locks.hold(digest):
            stored = self.cache.by_hash.get(digest)
            if stored is not None:
                self.cache.hits += 1
                self.cache.duplicates_avoided += 1
                inc_counter("media.hit_hash")
                log.debug("media.cache.hit_hash", hash=digest[:12])
                return stored
            self.cache.misses += 1
            stored = await retry_async(
                lambda: self.storage.upload(data, folder),
                attempts=self.retry_attempts,
                base_delay=self.retry_backoff,
                retry_on=(MediaUploadError,),
                should_retry=lambda e: getattr(e, "retryable", True),
                label="media.upload",
            )
            self.cache.by_hash[digest] = stored
            inc_counter("media.uploaded")
            log.info("media.uploaded", hash=digest[:12], bytes=len(data), stored=stored)
            return stored

    async def relocate_many(self, urls: Sequence[str], folder: str) -> list[str]:
        """Relocate in parallel with the media concurrency limit; order is kept."""
        if not self.enabled:
            return list(urls)

        async def _one(u: str) -> str:
            return await self.relocate(u, folder) or u

        return await run_bounded(list(urls), _one, concurrency=self.concurrency)
