from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Mapping, Optional

from integrations.marketplace.base import SourceFetcher
from pipeline.config import Settings
from pipeline.images.cache import ImageCache
from pipeline.progress import ProgressLedger
from pipeline.services.listing_store import ListingStore
from pipeline.utils.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    """Per-item outcome counters; every per-item error ends up here rather than aborting the run."""

    fetched: int = 0
    kept: int = 0
    rejected: int = 0
    duplicates: int = 0
    skipped: int = 0
    escalated: int = 0
    persist_failures: int = 0
    fixed: int = 0
    failed: int = 0
    errors: int = 0
    no_image: int = 0
    details_refreshed: int = 0

    def bump(self, name: str, amount: int = 1) -> None:
        setattr(self, name, getattr(self, name) + amount)

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


LABELS = {"no_image": "noImage", "persist_failures": "persistFailures", "details_refreshed": "detailsRefreshed"}


def format_summary(title: str, rows: Mapping[str, Any], extra: Optional[Mapping[str, Any]] = None) -> str:
    items = [(LABELS.get(k, k), v) for k, v in rows.items()]
    if extra:
        items += [(LABELS.get(k, k), v) for k, v in extra.items()]
    width = max([len(title)] + [len(k) for k, _ in items]) + 2
    value_width = max([len(str(v)) for _, v in items] + [5])
    rule = "+" + "-" * (width + 1) + "+" + "-" * (value_width + 2) + "+"
    lines = [rule, f"| {title.ljust(width)}| {''.ljust(value_width)} |", rule]
    for key, value in items:
        lines.append(f"| {key.ljust(width)}| {str(value).rjust(value_width)} |")
    lines.append(rule)
    return "\n".join(lines)


@dataclass
class RunContext:
    """Everything one job invocation needs, built explicitly and passed down."""

    settings: Settings
    store: ListingStore
    ledger: ProgressLedger = field(default_factory=ProgressLedger)
    fetchers: dict[str, SourceFetcher] = field(default_factory=dict)
    image_cache: Optional[ImageCache] = None
    stats: RunStats = field(default_factory=RunStats)
    dry_run: bool = False
    concurrency: int = 4

    def fetcher(self, platform: str) -> SourceFetcher:
        try:
            return self.fetchers[platform]
        except KeyError:
            raise ConfigError("fetcher_missing", f"No fetcher configured for platform {platform}") from None

    def require_image_cache(self) -> ImageCache:
        if self.image_cache is None:
            raise ConfigError("image_cache_missing", "Image cache is not configured for this run")
        return self.image_cache
