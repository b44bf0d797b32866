from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pipeline.db import Base

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")

PLATFORMS = ("ALIBABA", "MADE_IN_CHINA", "INDIAMART")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class Listing(TimestampMixin, Base):
    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    url: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    price_min: Mapped[Optional[float]] = mapped_column(sa.Float, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    moq: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    moq_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    store_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rating: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    orders: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    terms: Mapped[Optional[list[str]]] = mapped_column(JSONType, nullable=True)
    quality_class: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    detail: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    categories: Mapped[list["ListingCategory"]] = relationship(
        back_populates="listing", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def category_keys(self) -> list[str]:
        return sorted(link.category_key for link in self.categories)


class ListingCategory(Base):
    __tablename__ = "listing_categories"
    __table_args__ = (
        UniqueConstraint("listing_id", "category_key", name="uq_listing_categories_listing_category"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    category_key: Mapped[str] = mapped_column(String, nullable=False, index=True)

    listing: Mapped[Listing] = relationship(back_populates="categories")
