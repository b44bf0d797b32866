from __future__ import annotations

import hashlib
import re
from io import BytesIO
from typing import Optional
from urllib.parse import urlparse

from PIL import Image, UnidentifiedImageError

DEFAULT_MIN_BYTES = 4000
MIN_SIDE_PX = 200
# Downloaded bytes are held to a looser bound than filename markers.
MIN_DOWNLOAD_SIDE_PX = 120

# sha1 digests of known placeholder images; matched against the cache key and the payload.
KNOWN_BAD_HASHES = frozenset(
    {
        "4e70cc58277297de2d4741c437c9dc425c4f8adb",
        "e7cc244e1d0f558ae9669f57b973758bc14103ee",
    }
)

BLOCKED_URLS = frozenset(
    {
        "https://img.alicdn.com/imgextra/i1/O1CN01YyMrnH1TH65JNfJZU_!!6000000002356-2-tps-600-600.png",
        "https://s.alicdn.com/@img/imgextra/i1/O1CN01e5zQ2S1cAWz26ivMo_!!6000000003560-2-tps-920-110.png",
        "https://export.imimg.com/style/countrySvg.png",
    }
)

_UI_NAME_RE = re.compile(r"@img|sprite|logo|favicon|badge|watermark|(?<![a-z])icons?(?![a-z])")
_PLACEHOLDER_RE = re.compile(r"placeholder|noimage|no-image|no_image|/common/img/space\.png|countrysvg")
_DIMENSION_RE = re.compile(r"[_-](\d{1,4})x(\d{1,4})(?=[._\-q]|$)")
_TPS_RE = re.compile(r"tps-(\d+)-(\d+)")
_HASH_NAME_RE = re.compile(r"([0-9a-f]{40})\.[a-z]{3,4}$")


def _normalized(url: str) -> str:
    value = url.strip()
    if value.startswith("//"):
        value = f"https:{value}"
    return value


def url_reason(url: Optional[str]) -> Optional[str]:
    """Return why a URL looks like a UI element rather than product content, or None."""
    if not url or not url.strip():
        return "empty"
    normalized = _normalized(url)
    if normalized in BLOCKED_URLS:
        return "blocked_url"

    parsed = urlparse(normalized)
    path = (parsed.path or "").lower()
    if hashlib.sha1(normalized.encode("utf-8")).hexdigest() in KNOWN_BAD_HASHES:
        return "known_bad_hash"
    name_hash = _HASH_NAME_RE.search(path)
    if name_hash and name_hash.group(1) in KNOWN_BAD_HASHES:
        return "known_bad_hash"

    if path.endswith(".svg"):
        return "svg"
    if _UI_NAME_RE.search(path):
        return "ui_pattern"
    if _PLACEHOLDER_RE.search(f"{parsed.netloc.lower()}{path}"):
        return "placeholder"

    for match in _DIMENSION_RE.finditer(path):
        width, height = int(match.group(1)), int(match.group(2))
        if width < MIN_SIDE_PX or height < MIN_SIDE_PX:
            return "small_dimensions"

    tps = _TPS_RE.search(path)
    if tps:
        # tps-W-H.png files are storefront UI assets, whatever their size.
        if path.endswith(".png"):
            return "ui_asset"
        width, height = int(tps.group(1)), int(tps.group(2))
        if width < MIN_SIDE_PX or height < MIN_SIDE_PX:
            return "small_dimensions"
        ratio = width / height if height else 0.0
        if (ratio > 3 and height < 300) or (ratio < 0.33 and width < 300):
            return "banner"
    return None


def image_dimensions(data: bytes) -> Optional[tuple[int, int]]:
    try:
        with Image.open(BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def bytes_reason(
    data: Optional[bytes],
    min_bytes: int = DEFAULT_MIN_BYTES,
    min_side: Optional[int] = None,
) -> Optional[str]:
    if data is None:
        return None
    if len(data) < min_bytes:
        return "too_small"
    if hashlib.sha1(data).hexdigest() in KNOWN_BAD_HASHES:
        return "known_bad_hash"
    if min_side:
        size = image_dimensions(data)
        if size and min(size) < min_side:
            return "small_dimensions"
    return None


def bad_image_reason(
    url: Optional[str],
    data: Optional[bytes] = None,
    *,
    min_bytes: int = DEFAULT_MIN_BYTES,
    min_side: Optional[int] = None,
) -> Optional[str]:
    return url_reason(url) or bytes_reason(data, min_bytes, min_side)


def is_bad_image(
    url: Optional[str],
    data: Optional[bytes] = None,
    *,
    min_bytes: int = DEFAULT_MIN_BYTES,
    min_side: Optional[int] = None,
) -> bool:
    return bad_image_reason(url, data, min_bytes=min_bytes, min_side=min_side) is not None
