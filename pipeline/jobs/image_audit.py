"""Re-check images that are already cached and null the ones that turn out bad."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import httpx

from pipeline.context import RunContext, format_summary
from pipeline.images.cache import public_cache_prefix
from pipeline.images.predicate import DEFAULT_MIN_BYTES, MIN_DOWNLOAD_SIDE_PX, bad_image_reason
from pipeline.models import Listing
from pipeline.utils.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class AuditOptions:
    limit: Optional[int] = None
    batch_size: int = 100
    min_bytes: int = DEFAULT_MIN_BYTES
    # Same byte and pixel floors the image cache applies on download.
    min_side: int = MIN_DOWNLOAD_SIDE_PX


@dataclass
class AuditReport:
    checked: int = 0
    bad: int = 0
    missing: int = 0
    reasons: Counter = field(default_factory=Counter)

    def summary_rows(self) -> dict[str, Any]:
        rows: dict[str, Any] = {"checked": self.checked, "bad": self.bad, "missing": self.missing}
        for reason, count in self.reasons.most_common():
            rows[f"  {reason}"] = count
        return rows


class ImageAuditJob:
    def __init__(self, ctx: RunContext, options: AuditOptions, client: Optional[httpx.AsyncClient] = None):
        self.ctx = ctx
        self.options = options
        self.cache_dir = Path(ctx.settings.image_cache_dir)
        self.public_prefix = public_cache_prefix(ctx.settings)
        self._client = client

    def local_path_for(self, public_url: str) -> Path:
        return self.cache_dir / public_url.rsplit("/", 1)[-1]

    async def read_bytes(self, client: httpx.AsyncClient, public_url: str) -> Optional[bytes]:
        local = self.local_path_for(public_url)
        if local.exists():
            return await asyncio.to_thread(local.read_bytes)
        try:
            response = await client.get(public_url, timeout=self.ctx.settings.image_timeout_s)
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch cached image %s: %s", public_url, exc)
            return None
        if response.status_code != 200:
            logger.info("Cached image %s returned %s", public_url, response.status_code)
            return None
        return response.content

    async def audit_one(self, client: httpx.AsyncClient, listing: Listing, report: AuditReport) -> Optional[dict]:
        data = await self.read_bytes(client, listing.image)
        if data is None:
            report.missing += 1
            return None
        report.checked += 1
        reason = bad_image_reason(
            listing.image,
            data,
            min_bytes=self.options.min_bytes,
            min_side=self.options.min_side,
        )
        if reason is None:
            return None
        report.bad += 1
        report.reasons[reason] += 1
        logger.info("Listing %s has a bad cached image (%s): %s", listing.id, reason, listing.image)
        return {"id": listing.id, "image": None}

    async def run(self) -> AuditReport:
        if not self.public_prefix:
            raise ConfigError("storage_not_configured", "STORAGE_PUBLIC_URL is required to audit cached images")

        report = AuditReport()
        client = self._client or httpx.AsyncClient(follow_redirects=True)
        after_id = 0
        seen = 0
        try:
            while True:
                size = self.options.batch_size
                if self.options.limit:
                    size = min(size, self.options.limit - seen)
                    if size <= 0:
                        break
                batch = await self.ctx.store.cached_image_listings(self.public_prefix, after_id=after_id, limit=size)
                if not batch:
                    break
                updates = []
                for listing in batch:
                    update = await self.audit_one(client, listing, report)
                    if update:
                        updates.append(update)
                if updates:
                    if self.ctx.dry_run:
                        logger.info("[dry-run] would clear %s images", len(updates))
                    else:
                        await self.ctx.store.batch_update_by_id(updates)
                after_id = batch[-1].id
                seen += len(batch)
        finally:
            if self._client is None:
                await client.aclose()
        return report


async def run_image_audit(ctx: RunContext, options: AuditOptions) -> AuditReport:
    report = await ImageAuditJob(ctx, options).run()
    title = "IMAGE AUDIT (dry run)" if ctx.dry_run else "IMAGE AUDIT"
    print(format_summary(title, report.summary_rows()))
    return report
