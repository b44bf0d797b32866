from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pipeline.db import session_scope
from pipeline.models import Listing
from pipeline.repositories.listings import ListingRepository, SqlListingRepository

logger = logging.getLogger(__name__)

RepositoryFactory = Callable[[AsyncSession], ListingRepository]


class ListingStore:
    """Session-per-operation facade over the listing repository.

    Each listing upsert commits on its own, so an interrupted batch leaves some
    rows written and none half-written. Jobs never open sessions themselves.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        repository_factory: RepositoryFactory = SqlListingRepository,
        retry_delay_s: float = 0.5,
    ):
        self.session_factory = session_factory
        self.repository_factory = repository_factory
        self.retry_delay_s = retry_delay_s

    async def upsert(self, listing: dict[str, Any]) -> int:
        async with session_scope(self.session_factory) as session:
            return await self.repository_factory(session).upsert_by_url(listing)

    async def upsert_many(
        self,
        listings: Sequence[dict[str, Any]],
        batch_size: int = 25,
        retries: int = 2,
        continue_on_error: bool = True,
    ) -> tuple[int, int]:
        """Upsert listings one transaction each. Returns (saved, failed)."""
        saved = failed = 0
        for start in range(0, len(listings), batch_size):
            for listing in listings[start : start + batch_size]:
                if await self._upsert_with_retry(listing, retries):
                    saved += 1
                    continue
                failed += 1
                if not continue_on_error:
                    return saved, failed
        return saved, failed

    async def _upsert_with_retry(self, listing: dict[str, Any], retries: int) -> bool:
        attempts = retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self.upsert(listing)
                return True
            except Exception as exc:
                logger.warning(
                    "Upsert failed for %s (attempt %s/%s): %s",
                    listing.get("url"),
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    await asyncio.sleep(self.retry_delay_s * (2 ** (attempt - 1)))
        return False

    async def count_by_category(self, category_key: str, platform: Optional[str] = None) -> int:
        async with self.session_factory() as session:
            return await self.repository_factory(session).count_by_category(category_key, platform)

    async def count_by_categories(self, keys: Iterable[str], platform: Optional[str] = None) -> dict[str, int]:
        async with self.session_factory() as session:
            return await self.repository_factory(session).count_by_categories(keys, platform)

    async def batch_update_by_id(self, updates: Sequence[dict[str, Any]]) -> int:
        if not updates:
            return 0
        async with session_scope(self.session_factory) as session:
            return await self.repository_factory(session).batch_update_by_id(updates)

    async def listings_needing_images(
        self,
        public_prefix: Optional[str],
        platform: Optional[str] = None,
        after_id: int = 0,
        limit: int = 100,
    ) -> list[Listing]:
        async with self.session_factory() as session:
            return await self.repository_factory(session).listings_needing_images(
                public_prefix, platform=platform, after_id=after_id, limit=limit
            )

    async def cached_image_listings(self, public_prefix: str, after_id: int = 0, limit: int = 100) -> list[Listing]:
        async with self.session_factory() as session:
            return await self.repository_factory(session).cached_image_listings(public_prefix, after_id, limit)
