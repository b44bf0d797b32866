"""Re-resolve and cache images for stored listings that lack a cached one.

Listings are walked in id order behind a ``last_id`` cursor kept in the
progress ledger together with the running counters, so an interrupted run
resumes after the last finished batch. SIGINT/SIGTERM stop the loop once the
batch in flight is written.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any, Optional

from pipeline.context import RunContext, format_summary
from pipeline.images.cache import public_cache_prefix
from pipeline.images.resolver import (
    gallery_candidates,
    good_candidates,
    normalize_image_url,
    rank_candidates,
    upgrade_thumbnail,
)
from pipeline.models import Listing
from pipeline.utils.errors import ImageDownloadError

logger = logging.getLogger(__name__)

CURSOR_KEY = "last_id"
COUNTER_KEYS = ("fixed", "failed", "no_image", "errors")


@dataclass
class ImageFixOptions:
    platform: Optional[str] = None
    limit: Optional[int] = None
    batch_size: int = 20
    concurrency: int = 4
    handle_signals: bool = True


@dataclass
class ImageFixReport:
    fixed: int = 0
    failed: int = 0
    no_image: int = 0
    errors: int = 0
    processed: int = 0
    last_id: int = 0
    completed: bool = False
    interrupted: bool = False

    def summary_rows(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "fixed": self.fixed,
            "failed": self.failed,
            "noImage": self.no_image,
            "errors": self.errors,
            "lastId": self.last_id,
            "completed": "yes" if self.completed else "no",
        }


def listing_candidates(
    listing: Listing,
    public_prefix: Optional[str] = None,
    detail: Optional[dict[str, Any]] = None,
) -> list[str]:
    """Cache candidates for a listing: the resolver's ranking, then its current image."""
    ranked = rank_candidates(detail or listing.detail or {})
    current = normalize_image_url(listing.image)
    if current and not (public_prefix and current.startswith(public_prefix)):
        ranked.append(upgrade_thumbnail(current))
    return list(dict.fromkeys(good_candidates(ranked)))


class ImageFixJob:
    def __init__(self, ctx: RunContext, options: ImageFixOptions):
        self.ctx = ctx
        self.options = options
        self.public_prefix = public_cache_prefix(ctx.settings)
        self._semaphore = asyncio.Semaphore(max(1, options.concurrency))
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Stop requested, finishing the current batch")
        self._stop.set()

    def _install_signal_handlers(self) -> list[int]:
        if not self.options.handle_signals:
            return []
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s is not supported here", sig)
                continue
            installed.append(sig)
        return installed

    @staticmethod
    def _remove_signal_handlers(installed: list[int]) -> None:
        if not installed:
            return
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    async def refresh_detail(self, listing: Listing) -> Optional[dict[str, Any]]:
        """Fetch the product page of a listing whose stored detail has no gallery."""
        if gallery_candidates(listing.detail):
            return None
        url = getattr(listing, "url", None)
        fetcher = self.ctx.fetchers.get(getattr(listing, "platform", None))
        if not url or fetcher is None:
            return None
        detail = await fetcher.fetch_detail(url)
        if not gallery_candidates(detail):
            return None
        logger.info("Listing %s: refreshed detail from %s", listing.id, url)
        self.ctx.stats.bump("details_refreshed")
        return detail

    async def fix_one(self, listing: Listing) -> tuple[str, Optional[dict[str, Any]]]:
        async with self._semaphore:
            try:
                detail = await self.refresh_detail(listing)
                update: dict[str, Any] = {"id": listing.id, "detail": detail} if detail else {}
                candidates = listing_candidates(listing, self.public_prefix, detail)
                if not candidates:
                    logger.info("Listing %s has no usable image candidate", listing.id)
                    return "no_image", update or None
                if self.ctx.dry_run:
                    logger.info("[dry-run] listing %s would cache %s", listing.id, candidates[0])
                    return "fixed", None

                cache = self.ctx.require_image_cache()
                for url in candidates:
                    try:
                        cached = await cache.cache(url)
                    except ImageDownloadError as exc:
                        logger.debug("Listing %s candidate rejected (%s): %s", listing.id, exc.reason, url)
                        continue
                    return "fixed", {**update, "id": listing.id, "image": cached.public_url}
                logger.info("Listing %s: all %s candidates failed", listing.id, len(candidates))
                return "failed", update or None
            except Exception as exc:
                logger.warning("Listing %s failed unexpectedly: %s", listing.id, exc, exc_info=True)
                return "errors", None

    def _restore(self, report: ImageFixReport) -> None:
        ledger = self.ctx.ledger
        report.last_id = ledger.cursor(CURSOR_KEY)
        for key in COUNTER_KEYS:
            setattr(report, key, ledger.cursor(key))
        if report.last_id:
            logger.info("Resuming image fix after id=%s", report.last_id)

    def _checkpoint(self, report: ImageFixReport) -> None:
        ledger = self.ctx.ledger
        ledger.set_cursor(CURSOR_KEY, report.last_id)
        for key in COUNTER_KEYS:
            ledger.set_cursor(key, getattr(report, key))
        ledger.save()

    async def run(self) -> ImageFixReport:
        if not self.ctx.dry_run:
            self.ctx.require_image_cache()
        report = ImageFixReport()
        self._restore(report)
        installed = self._install_signal_handlers()
        try:
            while True:
                if self._stop.is_set():
                    report.interrupted = True
                    break
                size = self.options.batch_size
                if self.options.limit:
                    size = min(size, self.options.limit - report.processed)
                    if size <= 0:
                        break

                batch = await self.ctx.store.listings_needing_images(
                    self.public_prefix,
                    platform=self.options.platform,
                    after_id=report.last_id,
                    limit=size,
                )
                if not batch:
                    report.completed = True
                    break

                results = await asyncio.gather(*(self.fix_one(listing) for listing in batch))
                updates = []
                for status, update in results:
                    setattr(report, status, getattr(report, status) + 1)
                    self.ctx.stats.bump(status)
                    if update:
                        updates.append(update)

                if updates and not self.ctx.dry_run:
                    await self.ctx.store.batch_update_by_id(updates)
                report.last_id = batch[-1].id
                report.processed += len(batch)
                if not self.ctx.dry_run:
                    async with self.ctx.ledger.lock:
                        self._checkpoint(report)
                logger.info(
                    "Image fix batch up to id=%s: fixed=%s failed=%s noImage=%s errors=%s",
                    report.last_id,
                    report.fixed,
                    report.failed,
                    report.no_image,
                    report.errors,
                )
        finally:
            self._remove_signal_handlers(installed)

        if report.completed and not self.ctx.dry_run:
            self.ctx.ledger.clear()
        return report


async def run_image_fix(ctx: RunContext, options: ImageFixOptions) -> ImageFixReport:
    report = await ImageFixJob(ctx, options).run()
    title = "IMAGE FIX (dry run)" if ctx.dry_run else "IMAGE FIX"
    print(format_summary(title, report.summary_rows()))
    return report
