"""Pick the best product image out of a noisy detail payload.

Pure URL selection; nothing here downloads. Marketplace galleries mix product
shots with badges, storefront banners and thumbnails, so candidates are ranked
and filtered through a bad-image predicate before anything is cached.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable, Optional

from pipeline.images.predicate import is_bad_image

HIGH_RES = 960
THUMBNAIL_SIDES = frozenset({50, 80, 120})

_SIZE_MARKER_RE = re.compile(r"_(\d{2,4})x(\d{2,4})(?=[._q]|$)")
GALLERY_KEYS = ("gallery", "imageList", "images")
FALLBACK_KEYS = ("image", "mainImage")

BadImagePredicate = Callable[[str], bool]


def normalize_image_url(url: Any) -> Optional[str]:
    if not isinstance(url, str):
        return None
    value = url.strip()
    if not value or value.startswith("data:"):
        return None
    if value.startswith("//"):
        return f"https:{value}"
    if value.lower().startswith("http://"):
        return "https://" + value[7:]
    if value.lower().startswith("https://"):
        return value
    if re.match(r"^[a-z0-9.-]+\.[a-z]{2,}/", value, re.IGNORECASE):
        return f"https://{value}"
    return None


def size_marker(url: str) -> Optional[int]:
    match = None
    for match in _SIZE_MARKER_RE.finditer(url):
        pass
    if not match:
        return None
    return max(int(match.group(1)), int(match.group(2)))


def is_thumbnail(url: str) -> bool:
    return any(int(a) in THUMBNAIL_SIDES for m in _SIZE_MARKER_RE.finditer(url) for a in m.groups())


def upgrade_thumbnail(url: str) -> str:
    """Swap a sub-960 `_WxH` size marker for `_960x960`, leaving the rest of the URL untouched."""

    def _swap(match: re.Match) -> str:
        if int(match.group(1)) >= HIGH_RES and int(match.group(2)) >= HIGH_RES:
            return match.group(0)
        return f"_{HIGH_RES}x{HIGH_RES}"

    return _SIZE_MARKER_RE.sub(_swap, url)


def _entry_url(entry: Any) -> Optional[str]:
    if isinstance(entry, dict):
        entry = entry.get("url") or entry.get("src")
    return normalize_image_url(entry)


def gallery_candidates(detail: Optional[dict[str, Any]]) -> list[str]:
    if not detail:
        return []
    seen: set[str] = set()
    out: list[str] = []

    def _push(value: Any) -> None:
        url = _entry_url(value)
        if url and url not in seen:
            seen.add(url)
            out.append(url)

    for key in GALLERY_KEYS:
        source = detail.get(key)
        if isinstance(source, (list, tuple)):
            for entry in source:
                _push(entry)
        elif source:
            _push(source)
    for key in FALLBACK_KEYS:
        _push(detail.get(key))
    return out


def rank_candidates(
    detail: Optional[dict[str, Any]],
    is_bad: BadImagePredicate = is_bad_image,
) -> list[str]:
    """All usable candidates, best first. `resolve_best_image` is the head of this list."""
    detail = detail or {}
    ranked: list[str] = []

    def _add(url: Optional[str]) -> None:
        if url and url not in ranked:
            ranked.append(url)

    hero = _entry_url(detail.get("heroImage"))
    if hero and not is_bad(upgrade_thumbnail(hero)):
        _add(upgrade_thumbnail(hero))

    gallery = gallery_candidates(detail)

    for url in gallery:
        size = size_marker(url)
        if (size is None or size >= HIGH_RES) and not is_bad(url):
            _add(url)

    for url in gallery:
        size = size_marker(url)
        if size is not None and size < HIGH_RES:
            upgraded = upgrade_thumbnail(url)
            if not is_bad(url) or (is_thumbnail(url) and not is_bad(upgraded)):
                _add(upgraded)

    for url in gallery:
        if not is_thumbnail(url):
            upgraded = upgrade_thumbnail(url)
            if not is_bad(url) and not is_bad(upgraded):
                _add(upgraded)

    if gallery:
        first = gallery[0]
        upgraded = upgrade_thumbnail(first)
        # A thumbnail's own marker is always too small; judge it by its upgrade.
        if not is_bad(upgraded) and (is_thumbnail(first) or not is_bad(first)):
            _add(upgraded)
    return ranked


def resolve_best_image(
    detail: Optional[dict[str, Any]],
    is_bad: BadImagePredicate = is_bad_image,
) -> Optional[str]:
    ranked = rank_candidates(detail, is_bad)
    return ranked[0] if ranked else None


def good_candidates(urls: Iterable[str], is_bad: BadImagePredicate = is_bad_image) -> list[str]:
    return [url for url in urls if not is_bad(url)]
