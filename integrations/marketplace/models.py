from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

EXPECTED_FIELDS = ("title", "url", "image", "price", "moq", "store_name")


class RawListing(BaseModel):
    platform: str
    url: Optional[str] = None
    title: Optional[str] = None
    image: Optional[str] = None
    price: Optional[str] = None
    currency: Optional[str] = None
    moq: Optional[str] = None
    store_name: Optional[str] = None
    description: Optional[str] = None
    rating: Optional[str] = None
    orders: Optional[str] = None
    detail: Optional[dict[str, Any]] = None


class ExtractionResult(BaseModel):
    """A partial listing plus the expected fields the page did not provide."""

    record: RawListing
    missing: list[str] = Field(default_factory=list)

    @property
    def usable(self) -> bool:
        return bool(self.record.url and self.record.title)

    @classmethod
    def from_record(cls, record: RawListing) -> "ExtractionResult":
        missing = [name for name in EXPECTED_FIELDS if not getattr(record, name)]
        return cls(record=record, missing=missing)
