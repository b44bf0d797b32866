from pipeline.images.cache import CachedImage, ImageCache, cache_key
from pipeline.images.predicate import bad_image_reason, is_bad_image
from pipeline.images.resolver import rank_candidates, resolve_best_image, upgrade_thumbnail
from pipeline.images.storage import ObjectStorage

__all__ = [
    "CachedImage",
    "ImageCache",
    "ObjectStorage",
    "bad_image_reason",
    "cache_key",
    "is_bad_image",
    "rank_candidates",
    "resolve_best_image",
    "upgrade_thumbnail",
]
