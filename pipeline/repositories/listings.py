from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pipeline.models import Listing, ListingCategory
from pipeline.utils.text import clean_text, parse_moq, parse_price

logger = logging.getLogger(__name__)

SCALAR_FIELDS = (
    "platform",
    "title",
    "image",
    "price",
    "price_min",
    "currency",
    "moq",
    "moq_min",
    "store_name",
    "description",
    "rating",
    "orders",
    "quality_class",
    "detail",
)
UPDATABLE_FIELDS = frozenset(SCALAR_FIELDS) | {"terms"}


def prepare_listing(raw: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Split an incoming listing into column values and category keys.

    Empty strings become None so that an update never blanks a stored field.
    """
    values: dict[str, Any] = {"url": raw["url"]}
    for field in SCALAR_FIELDS:
        value = raw.get(field)
        if isinstance(value, str):
            value = clean_text(value)
        if value is not None and value != {} and value != []:
            values[field] = value

    if "price" in values and "price_min" not in values:
        price_min, currency = parse_price(values["price"])
        if price_min is not None:
            values["price_min"] = price_min
        if currency and "currency" not in values:
            values["currency"] = currency
    if "moq" in values and "moq_min" not in values:
        moq_min = parse_moq(values["moq"])
        if moq_min is not None:
            values["moq_min"] = moq_min

    terms = [t for t in dict.fromkeys(clean_text(t) for t in raw.get("terms") or []) if t]
    if terms:
        values["terms"] = terms

    categories = [c for c in dict.fromkeys(clean_text(c) for c in raw.get("categories") or []) if c]
    return values, categories


class ListingRepository(ABC):
    @abstractmethod
    async def upsert_by_url(self, listing: dict[str, Any]) -> int:
        """Create or update a listing keyed by its source URL. Returns the listing id."""
        pass

    @abstractmethod
    async def count_by_category(self, category_key: str, platform: Optional[str] = None) -> int:
        pass

    @abstractmethod
    async def count_by_categories(self, keys: Iterable[str], platform: Optional[str] = None) -> dict[str, int]:
        pass

    @abstractmethod
    async def batch_update_by_id(self, updates: Sequence[dict[str, Any]]) -> int:
        """Apply `{id, **fields}` updates. Returns the number of rows touched."""
        pass

    @abstractmethod
    async def listings_needing_images(
        self,
        public_prefix: Optional[str],
        platform: Optional[str] = None,
        after_id: int = 0,
        limit: int = 100,
    ) -> list[Listing]:
        pass

    @abstractmethod
    async def cached_image_listings(self, public_prefix: str, after_id: int = 0, limit: int = 100) -> list[Listing]:
        pass


class SqlListingRepository(ListingRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    def _insert(self, model):
        if self.session.bind.dialect.name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    async def upsert_by_url(self, listing: dict[str, Any]) -> int:
        values, categories = prepare_listing(listing)
        if "title" not in values:
            values["title"] = "Product"

        stmt = self._insert(Listing).values(**values)
        table = Listing.__table__
        update_dict: dict[str, Any] = {
            name: func.coalesce(stmt.excluded[name], table.c[name])
            for name in values
            if name in SCALAR_FIELDS
        }
        if "terms" in values:
            update_dict["terms"] = stmt.excluded.terms
        update_dict["updated_at"] = func.now()

        stmt = stmt.on_conflict_do_update(index_elements=[Listing.url], set_=update_dict).returning(Listing.id)
        result = await self.session.execute(stmt)
        listing_id = result.scalar_one()

        if categories:
            link_stmt = (
                self._insert(ListingCategory)
                .values([{"listing_id": listing_id, "category_key": key} for key in categories])
                .on_conflict_do_nothing(index_elements=["listing_id", "category_key"])
            )
            await self.session.execute(link_stmt)
        return listing_id

    async def count_by_category(self, category_key: str, platform: Optional[str] = None) -> int:
        counts = await self.count_by_categories([category_key], platform)
        return counts.get(category_key, 0)

    async def count_by_categories(self, keys: Iterable[str], platform: Optional[str] = None) -> dict[str, int]:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}
        stmt = (
            select(ListingCategory.category_key, func.count(func.distinct(Listing.id)))
            .join(Listing, Listing.id == ListingCategory.listing_id)
            .where(ListingCategory.category_key.in_(keys))
            .group_by(ListingCategory.category_key)
        )
        if platform:
            stmt = stmt.where(Listing.platform == platform)
        result = await self.session.execute(stmt)
        counts = {key: 0 for key in keys}
        counts.update({key: int(count) for key, count in result.all()})
        return counts

    async def batch_update_by_id(self, updates: Sequence[dict[str, Any]]) -> int:
        touched = 0
        for item in updates:
            fields = {k: v for k, v in item.items() if k in UPDATABLE_FIELDS}
            if not fields or item.get("id") is None:
                continue
            stmt = (
                update(Listing)
                .where(Listing.id == item["id"])
                .values(**fields, updated_at=func.now())
            )
            result = await self.session.execute(stmt)
            touched += result.rowcount or 0
        return touched

    async def listings_needing_images(
        self,
        public_prefix: Optional[str],
        platform: Optional[str] = None,
        after_id: int = 0,
        limit: int = 100,
    ) -> list[Listing]:
        missing = or_(Listing.image.is_(None), Listing.image == "")
        if public_prefix:
            missing = or_(missing, ~Listing.image.startswith(public_prefix))
        stmt = select(Listing).where(and_(Listing.id > after_id, missing))
        if platform:
            stmt = stmt.where(Listing.platform == platform)
        stmt = stmt.order_by(Listing.id).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def cached_image_listings(self, public_prefix: str, after_id: int = 0, limit: int = 100) -> list[Listing]:
        stmt = (
            select(Listing)
            .where(Listing.id > after_id, Listing.image.startswith(public_prefix))
            .order_by(Listing.id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
