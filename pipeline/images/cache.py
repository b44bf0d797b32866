from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx

from pipeline.config import Settings
from pipeline.images.predicate import MIN_DOWNLOAD_SIDE_PX, bytes_reason
from pipeline.images.storage import ObjectStorage, content_type_for
from pipeline.utils.errors import ImageDownloadError

logger = logging.getLogger(__name__)

ALLOWED_HOST_SUFFIXES = (
    ".alibaba.com",
    ".alicdn.com",
    ".1688.com",
    ".made-in-china.com",
    ".micstatic.com",
    ".indiamart.com",
    ".imimg.com",
)

REFERERS = (
    (("1688.com",), "https://s.1688.com/"),
    (("alicdn.com", "alibaba.com"), "https://www.alibaba.com/"),
    (("made-in-china.com", "micstatic.com"), "https://www.made-in-china.com/"),
    (("indiamart.com", "imimg.com"), "https://dir.indiamart.com/"),
)

IMAGE_ACCEPT = "image/avif,image/webp,image/apng,image/*,*/*;q=0.8"
_EXT_RE = re.compile(r"\.(jpg|jpeg|png|webp|gif)(?:\?|$)", re.IGNORECASE)


def cache_key(url: str) -> str:
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()
    match = _EXT_RE.search(url)
    ext = match.group(1).lower() if match else "jpg"
    return f"{digest}.{ext}"


def public_cache_prefix(settings: Settings) -> Optional[str]:
    """Public URL prefix every cached image starts with, or None when storage has no public URL."""
    if not settings.storage_public_url:
        return None
    base = settings.storage_public_url.rstrip("/")
    prefix = settings.storage_prefix.strip("/")
    return f"{base}/{prefix}/" if prefix else f"{base}/"


def referer_for(url: str) -> Optional[str]:
    host = (urlparse(url).hostname or "").lower()
    for suffixes, referer in REFERERS:
        if any(host == s or host.endswith(f".{s}") for s in suffixes):
            return referer
    return None


def is_allowed_host(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(host.endswith(suffix) or host == suffix.lstrip(".") for suffix in ALLOWED_HOST_SUFFIXES)


def sniff_image(data: bytes) -> Optional[str]:
    if data[:3] == b"\xff\xd8\xff":
        return "jpg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "gif"
    return None


@dataclass(frozen=True)
class CachedImage:
    source_url: str
    key: str
    local_path: Path
    public_url: str
    size: int
    from_local: bool = False


class ImageCache:
    """Downloads marketplace images and mirrors them locally and into object storage.

    The cache key is derived from the source URL, not the bytes, so re-fetching
    a URL overwrites the same object.
    """

    def __init__(
        self,
        settings: Settings,
        storage: ObjectStorage,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.cache_dir = Path(settings.image_cache_dir)
        self.prefix = settings.storage_prefix.strip("/")
        self.min_bytes = settings.image_min_bytes
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "ImageCache":
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True, timeout=self.settings.image_timeout_s)
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def object_key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def public_url_for(self, url: str) -> str:
        return self.storage.public_url(self.object_key(cache_key(url)))

    def _headers(self, url: str) -> dict[str, str]:
        headers = {
            "User-Agent": self.settings.user_agent,
            "Accept": IMAGE_ACCEPT,
            "Accept-Language": "en-US,en;q=0.9",
        }
        referer = referer_for(url)
        if referer:
            headers["Referer"] = referer
        return headers

    async def download(self, url: str) -> bytes:
        if self._client is None:
            raise RuntimeError("ImageCache must be used as an async context manager")
        try:
            response = await self._client.get(
                url,
                headers=self._headers(url),
                timeout=self.settings.image_timeout_s,
                follow_redirects=True,
            )
        except httpx.TimeoutException as exc:
            raise ImageDownloadError(url, "timeout", str(exc)) from exc
        except httpx.HTTPError as exc:
            raise ImageDownloadError(url, "network", str(exc)) from exc

        if response.status_code != 200:
            raise ImageDownloadError(url, "status", str(response.status_code))
        data = response.content
        reason = bytes_reason(data, self.min_bytes, MIN_DOWNLOAD_SIDE_PX)
        if reason:
            raise ImageDownloadError(url, reason, f"{len(data)} bytes")
        if sniff_image(data) is None:
            raise ImageDownloadError(url, "not_image")
        return data

    async def cache(self, url: str) -> CachedImage:
        if not is_allowed_host(url):
            raise ImageDownloadError(url, "host_not_allowed")

        key = cache_key(url)
        object_key = self.object_key(key)
        local_path = self.cache_dir / key

        if local_path.exists():
            size = local_path.stat().st_size
            logger.debug("Local cache hit for %s -> %s", url, key)
            return CachedImage(url, key, local_path, self.storage.public_url(object_key), size, from_local=True)

        data = await self.download(url)
        # A local file means the object is in the bucket; write it only after put.
        public_url = await self.storage.put(object_key, data, content_type_for(key))
        await asyncio.to_thread(self._write_local, local_path, data)
        logger.info("Cached %s -> %s (%d bytes)", url, object_key, len(data))
        return CachedImage(url, key, local_path, public_url, len(data))

    @staticmethod
    def _write_local(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
