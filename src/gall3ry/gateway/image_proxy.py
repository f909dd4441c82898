"""Allow-listed image proxy for NFT media"""

import asyncio
from typing import Awaitable, Callable, Iterable, Optional, Tuple

import aiohttp
from loguru import logger

from ..errors import InvalidInput
from ..normalizer import convert_ipfs_to_http
from ..security import is_allowed_host, sanitize_for_logging, validate_url_safe

MAX_IMAGE_BYTES = 15 * 1024 * 1024
IMAGE_CACHE_CONTROL = "public, max-age=86400"
PLACEHOLDER_CACHE_CONTROL = "public, max-age=3600"

PLACEHOLDER_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="200" height="200" viewBox="0 0 200 200">'
    '<rect width="200" height="200" fill="#f0f0f0"/>'
    '<text x="50%" y="50%" font-family="Arial" font-size="12" text-anchor="middle" fill="#888">'
    'Image unavailable</text></svg>'
).encode("utf-8")

EXTENSION_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
}

# url -> (status, content type, body)
ImageFetcher = Callable[[str], Awaitable[Tuple[int, Optional[str], bytes]]]


class ImageTooLarge(Exception):
    pass


def sniff_content_type(url: str, declared: Optional[str], body: bytes) -> Optional[str]:
    """Declared image type, else guessed from extension or magic bytes"""
    if declared and declared.lower().startswith("image/"):
        return declared
    path = url.split("?", 1)[0].lower()
    for extension, content_type in EXTENSION_TYPES.items():
        if path.endswith(extension):
            return content_type
    if body.startswith(b"\x89PNG"):
        return "image/png"
    if body.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if body.startswith(b"GIF"):
        return "image/gif"
    if body.startswith(b"RIFF") and body[8:12] == b"WEBP":
        return "image/webp"
    return None


class ImageProxy:
    """Fetches allow-listed images; failures become a placeholder"""

    def __init__(
        self,
        allowed_hosts: Iterable[str],
        timeout: float = 10.0,
        max_bytes: int = MAX_IMAGE_BYTES,
        fetcher: Optional[ImageFetcher] = None,
    ):
        self.allowed_hosts = list(allowed_hosts)
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._fetch = fetcher or self._aiohttp_fetch

    def resolve_url(self, url: Optional[str]) -> str:
        """
        Rewrite and validate a requested image URL

        Raises:
            InvalidInput when the URL is missing, unsafe or not allow-listed
        """
        if not url or not url.strip():
            raise InvalidInput("url is required")
        target = convert_ipfs_to_http(url) or ""
        if target.startswith("http://"):
            target = "https://" + target[len("http://"):]

        is_safe, error = validate_url_safe(target)
        if not is_safe:
            raise InvalidInput(error or "Unsafe url")
        if not is_allowed_host(target, self.allowed_hosts):
            raise InvalidInput("Image host is not allowed", details={"url": sanitize_for_logging(target)})
        return target

    async def _aiohttp_fetch(self, url: str) -> Tuple[int, Optional[str], bytes]:
        headers = {"Accept": "image/*,*/*;q=0.8", "User-Agent": "gall3ry-image-proxy/1.0"}
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.get(url, headers=headers) as response:
                if response.status >= 400:
                    return response.status, response.headers.get("Content-Type"), b""
                if response.content_length and response.content_length > self.max_bytes:
                    raise ImageTooLarge(f"{response.content_length} bytes")
                body = bytearray()
                async for chunk in response.content.iter_chunked(64 * 1024):
                    body.extend(chunk)
                    if len(body) > self.max_bytes:
                        raise ImageTooLarge(f"more than {self.max_bytes} bytes")
                return response.status, response.headers.get("Content-Type"), bytes(body)

    async def fetch(self, url: Optional[str]) -> Tuple[bytes, str, str]:
        """
        Returns:
            (body, content_type, cache_control); the placeholder on upstream failure
        """
        target = self.resolve_url(url)
        safe_url = sanitize_for_logging(target)
        try:
            status, declared, body = await self._fetch(target)
        except (aiohttp.ClientError, asyncio.TimeoutError, ImageTooLarge) as e:
            logger.warning(f"Image fetch failed for {safe_url}: {type(e).__name__}: {e}")
            return PLACEHOLDER_SVG, "image/svg+xml", PLACEHOLDER_CACHE_CONTROL

        if status >= 400 or not body:
            logger.warning(f"Image upstream returned {status} for {safe_url}")
            return PLACEHOLDER_SVG, "image/svg+xml", PLACEHOLDER_CACHE_CONTROL

        content_type = sniff_content_type(target, declared, body)
        if content_type is None:
            logger.warning(f"Image upstream returned non-image content for {safe_url}")
            return PLACEHOLDER_SVG, "image/svg+xml", PLACEHOLDER_CACHE_CONTROL
        return body, content_type, IMAGE_CACHE_CONTROL
