"""
Image Fetcher — remote image download with retry/backoff.

Used when a creation request names an image by URL instead of uploading it,
and for Open Library book covers on ISBN / BookRecord creations.

Usage:
    fetcher = ImageFetcher()
    image_bytes, mime_type = await fetcher.fetch_image(url)
    cover = await fetcher.fetch_book_cover("9780262033848")
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

import aiohttp

from asset_store import MAX_IMAGE_BYTES

logger = logging.getLogger("evermark-portal.image-fetcher")

# Max retries for transient failures
MAX_RETRIES = 3
RETRY_BACKOFF = [1.0, 3.0, 10.0]
REQUEST_TIMEOUT = 30
MIN_IMAGE_BYTES = 1000
CHUNK_SIZE = 64 * 1024

OPEN_LIBRARY_COVERS = "https://covers.openlibrary.org/b/isbn"


def book_cover_url(isbn: str) -> str:
    """Large Open Library cover URL; ``default=false`` turns a missing cover into a 404."""
    clean = re.sub(r"[^0-9Xx]", "", isbn).upper()
    return f"{OPEN_LIBRARY_COVERS}/{clean}-L.jpg?default=false"


class ImageFetcher:
    """Fetch remote images for Evermark creation."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        backoff: Optional[list[float]] = None,
        max_bytes: int = MAX_IMAGE_BYTES,
    ):
        self._external_session = session
        self._max_bytes = max_bytes
        self._own_session: Optional[aiohttp.ClientSession] = None
        self._backoff = backoff or RETRY_BACKOFF

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._external_session:
            return self._external_session
        if self._own_session is None or self._own_session.closed:
            self._own_session = aiohttp.ClientSession(
                headers={"User-Agent": "EvermarkPortal/1.0 (+https://evermarks.net)"},
            )
        return self._own_session

    async def close(self):
        if self._own_session and not self._own_session.closed:
            await self._own_session.close()

    async def fetch_image(self, url: str) -> tuple[bytes, str]:
        """Download an image.

        Returns:
            ``(bytes, content_type)``; content type comes from the response
            header and is only a hint, the asset store sniffs the bytes.

        Raises:
            ImageFetchError: on 404/410, undersized or oversized payloads, or
                when all retry attempts fail.
        """
        if not url or not url.startswith(("http://", "https://")):
            raise ImageFetchError(f"Not an http(s) image URL: {url!r}")

        session = await self._get_session()

        for attempt in range(MAX_RETRIES):
            try:
                async with session.get(
                    url,
                    timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
                ) as resp:
                    if resp.status == 200:
                        data = await self._read_bounded(resp, url)
                        if len(data) < MIN_IMAGE_BYTES:
                            raise ImageFetchError(f"Suspiciously small image ({len(data)} bytes): {url}")
                        content_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
                        return data, content_type
                    elif resp.status in (404, 410):
                        raise ImageFetchError(f"Image not found (HTTP {resp.status}): {url}")
                    else:
                        logger.warning("Image fetch attempt %d/%d: HTTP %d for %s", attempt + 1, MAX_RETRIES, resp.status, url)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("Image fetch attempt %d/%d failed: %s for %s", attempt + 1, MAX_RETRIES, e, url)

            if attempt < MAX_RETRIES - 1:
                await asyncio.sleep(self._backoff[attempt])

        raise ImageFetchError(f"All {MAX_RETRIES} attempts failed for: {url}")

    async def _read_bounded(self, resp, url: str) -> bytes:
        """Stream the body, giving up once it passes ``max_bytes``."""
        declared = resp.headers.get("Content-Length", "")
        if declared.isdigit() and int(declared) > self._max_bytes:
            raise ImageFetchError(f"Image too large ({declared} bytes): {url}")
        data = bytearray()
        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
            data.extend(chunk)
            if len(data) > self._max_bytes:
                raise ImageFetchError(f"Image too large (over {self._max_bytes} bytes): {url}")
        return bytes(data)

    async def fetch_book_cover(self, isbn: str) -> tuple[bytes, str]:
        return await self.fetch_image(book_cover_url(isbn))


class ImageFetchError(Exception):
    """Raised when image fetching fails after all retries."""
    pass
