"""Marketplace search fetchers and tolerant listing extraction."""

from .base import SourceFetcher
from .extract import canonical_url, extract_detail, extract_search_results, normalize_detail
from .factory import FETCHER_REGISTRY, get_fetcher
from .models import ExtractionResult, RawListing

__all__ = [
    "FETCHER_REGISTRY",
    "ExtractionResult",
    "RawListing",
    "SourceFetcher",
    "canonical_url",
    "extract_detail",
    "extract_search_results",
    "get_fetcher",
    "normalize_detail",
]
