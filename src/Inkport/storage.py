# src/Inkport/storage.py

from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Protocol

import httpx
import structlog

from Inkport.config import Settings
from Inkport.errors import MediaUploadError

log = structlog.get_logger()

_MAGIC: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpg"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
    (b"BM", "bmp"),
)


def sniff_extension(data: bytes) -> str:
    for magic, ext in _MAGIC:
        if data.startswith(magic):
            return ext
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    if data[4:12] in (b"ftypavif", b"ftypavis"):
        return "avif"
    return "bin"


def _clean_folder(folder: str) -> str:
    parts = [p for p in folder.replace("\\", "/").split("/") if p and p not in (".", "..")]
    return "/".join(parts) or "misc"


class MediaStorage(Protocol):
    """Takes bytes plus a folder hint and returns the stored URL."""

    async def upload(self, data: bytes, folder: str) -> str: ...

    async def aclose(self) -> None: ...


class LocalMediaStorage:
    """Content-addressed files under ``root/<folder>/<sha256>.<ext>``.

    Writing the same bytes twice is a no-op, so a crashed run that re-uploads
    does not leave duplicate files behind.
    """

    def __init__(self, root: str | Path, public_base_url: str = "/uploads") -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    async def upload(self, data: bytes, folder: str) -> str:
        if not data:
            raise MediaUploadError("refusing to store an empty file", retryable=False)
        sub = _clean_folder(folder)
        name = f"{hashlib.sha256(data).hexdigest()}.{sniff_extension(data)}"
        target = self.root / sub / name
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as exc:
            raise MediaUploadError(f"cannot write {target}: {exc}") from exc
        return f"{self.public_base_url}/{sub}/{name}"

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        if target.exists() and target.stat().st_size == len(data):
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)

    async def aclose(self) -> None:
        return None


class HttpMediaStorage:
    """Multipart POST to an image service that answers with ``{"url": ...}``."""

    def __init__(
        self,
        upload_url: str,
        *,
        api_key: str | None = None,
        max_bytes: int = 25 * 1024 * 1024,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.upload_url = upload_url
        self.max_bytes = max_bytes
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def upload(self, data: bytes, folder: str) -> str:
        if len(data) > self.max_bytes:
            raise MediaUploadError(
                f"file too large: {len(data) / 1024 / 1024:.2f}MB "
                f"(max {self.max_bytes / 1024 / 1024:.0f}MB)",
                retryable=False,
            )
        ext = sniff_extension(data)
        file_name = f"{hashlib.sha256(data).hexdigest()[:16]}.{ext}"
        try:
            resp = await self._client.post(
                self.upload_url,
                files={"file": (file_name, data)},
                data={"fileName": file_name, "folder": f"/{_clean_folder(folder)}"},
            )
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as exc:
            raise MediaUploadError(f"upload to {self.upload_url} failed: {exc}") from exc
        except ValueError as exc:
            raise MediaUploadError(f"upload response was not JSON: {exc}") from exc
        url = body.get("url") if isinstance(body, dict) else None
        if not url:
            raise MediaUploadError("upload response carried no url", retryable=False)
        return str(url)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def storage_from_settings(settings: Settings) -> MediaStorage:
    if settings.media_backend == "http":
        if not settings.media_upload_url:
            raise ValueError("media_backend=http requires media_upload_url to be set")
        key = settings.media_upload_api_key
        return HttpMediaStorage(
            settings.media_upload_url,
            api_key=key.get_secret_value() if key else None,
            max_bytes=settings.media_max_bytes,
            timeout=settings.media_timeout_seconds,
        )
    return LocalMediaStorage(settings.media_local_root, settings.media_public_base_url)
