#!/usr/bin/env python3
"""
Version: 1.1
Created: 2026-10-14
Updated: 2026-10-15

Image Utilities - download QC photos for inline previews.

Changes in v1.1:
- One ClientSession per batch instead of one per photo
- AVIF conversion result is verified by its RIFF/WEBP header

Provides:
- Concurrent photo download with a semaphore
- MIME type detection from magic bytes (header and extension as fallback)
- AVIF -> WebP conversion with Pillow, since MCP clients reject AVIF
"""

import asyncio
import base64
import logging
from io import BytesIO
from typing import List, Optional, Tuple

import aiohttp
from PIL import Image

logger = logging.getLogger(__name__)


# ==================== CONFIGURATION ====================

DEFAULT_MAX_CONCURRENT = 8

# Seconds per photo
DEFAULT_TIMEOUT = 10

REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Referer': 'https://www.kakobuy.com/',
    'Accept': 'image/avif,image/webp,image/apng,image/*,*/*;q=0.8',
}

# (offset, signature, mime)
MAGIC_SIGNATURES = [
    (0, b'\xff\xd8\xff', 'image/jpeg'),
    (0, b'\x89PNG\r\n\x1a\n', 'image/png'),
    (0, b'GIF87a', 'image/gif'),
    (0, b'GIF89a', 'image/gif'),
]

EXTENSION_MIME = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.png': 'image/png',
    '.webp': 'image/webp',
    '.gif': 'image/gif',
    '.avif': 'image/avif',
}


# ==================== MIME TYPE DETECTION ====================

def _is_webp(data: bytes) -> bool:
    return len(data) >= 12 and data[0:4] == b'RIFF' and data[8:12] == b'WEBP'


def detect_mime_type(image_bytes: bytes, url: str = "", content_type: str = "") -> str:
    """
    Detect the MIME type of downloaded image bytes.

    Magic bytes win; the Content-Type header and then the URL extension are
    consulted when the signature is unknown.
    """
    if len(image_bytes) >= 12:
        for offset, signature, mime in MAGIC_SIGNATURES:
            if image_bytes[offset:offset + len(signature)] == signature:
                return mime
        if _is_webp(image_bytes):
            return 'image/webp'
        # ISO-BMFF: ....ftyp(avif|avis)
        if image_bytes[4:8] == b'ftyp' and (b'avif' in image_bytes[8:20] or b'avis' in image_bytes[8:20]):
            return 'image/avif'

    content_type = (content_type or "").lower()
    for token, mime in (('avif', 'image/avif'), ('jpeg', 'image/jpeg'), ('jpg', 'image/jpeg'),
                        ('png', 'image/png'), ('webp', 'image/webp'), ('gif', 'image/gif')):
        if token in content_type:
            return mime

    path = (url or "").lower().split('?')[0]
    for extension, mime in EXTENSION_MIME.items():
        if path.endswith(extension):
            return mime

    return 'image/jpeg'


# ==================== IMAGE CONVERSION ====================

def convert_to_webp(image_bytes: bytes, quality: int = 85) -> bytes:
    """Re-encode image bytes as WebP; returns b'' when Pillow cannot do it."""
    try:
        img = Image.open(BytesIO(image_bytes))
        if img.mode not in ('RGB', 'RGBA'):
            img = img.convert('RGB')

        output = BytesIO()
        img.save(output, format='WEBP', quality=quality)
        converted = output.getvalue()
    except (OSError, ValueError) as e:
        logger.warning(f"[Image] WebP conversion failed: {e}")
        return b''

    if not _is_webp(converted):
        logger.warning("[Image] WebP conversion produced invalid output")
        return b''
    return converted


# ==================== IMAGE FETCHING ====================

async def fetch_image_as_base64(
    session: aiohttp.ClientSession,
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> Optional[Tuple[str, str]]:
    """
    Download one photo.

    Returns:
        (base64_data, mime_type), or None when the photo is unavailable
    """
    try:
        async with session.get(
            url,
            headers=REQUEST_HEADERS,
            ssl=False,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            if response.status != 200:
                logger.warning(f"[Image] HTTP {response.status} for {url}")
                return None
            image_bytes = await response.read()
            content_type = response.headers.get('Content-Type', '')
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning(f"[Image] Could not fetch {url}: {e}")
        return None

    mime_type = detect_mime_type(image_bytes, url, content_type)
    if mime_type == 'image/avif':
        converted = convert_to_webp(image_bytes)
        if not converted:
            logger.warning(f"[Image] Skipping AVIF photo that could not be converted: {url}")
            return None
        image_bytes, mime_type = converted, 'image/webp'

    return base64.b64encode(image_bytes).decode('utf-8'), mime_type


async def fetch_images_batch(
    image_urls: List[str],
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    timeout: float = DEFAULT_TIMEOUT,
) -> List[Tuple[str, str, str]]:
    """
    Download several photos concurrently.

    Returns:
        (url, base64_data, mime_type) for each photo that downloaded, in input order
    """
    if not image_urls:
        return []

    semaphore = asyncio.Semaphore(max_concurrent)

    async with aiohttp.ClientSession() as session:
        async def fetch_one(url: str):
            async with semaphore:
                result = await fetch_image_as_base64(session, url, timeout)
            if result is None:
                return None
            return (url, result[0], result[1])

        results = await asyncio.gather(*(fetch_one(url) for url in image_urls))

    return [r for r in results if r is not None]
