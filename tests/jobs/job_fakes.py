"""Fakes shared by the job tests."""

from types import SimpleNamespace
from typing import Callable, Optional

from integrations.marketplace.models import RawListing
from pipeline.taxonomy import Taxonomy
from pipeline.utils.errors import ImageDownloadError


class FakeFetcher:
    """Returns canned search results per term and records every call."""

    platform = "INDIAMART"

    def __init__(self, results: Optional[dict] = None, headless_results: Optional[dict] = None):
        self.results = results or {}
        self.headless_results = headless_results or {}
        self.calls: list[tuple[str, int, bool]] = []

    async def fetch(self, term: str, limit: int, *, headless: bool = False) -> list[RawListing]:
        self.calls.append((term, limit, headless))
        source = self.headless_results if headless else self.results
        value = source.get(term, [])
        if callable(value):
            value = value()
        return list(value)[:limit]


class FakeStore:
    """In-memory stand-in for ListingStore; counts distinct URLs per category."""

    def __init__(self, rows=None):
        self.by_category: dict[str, set[str]] = {}
        self.upserted: list[dict] = []
        self.updates: list[dict] = []
        self.rows = list(rows or [])

    def seed(self, category: str, count: int) -> None:
        urls = self.by_category.setdefault(category, set())
        for n in range(count):
            urls.add(f"https://seed.example.com/{category}/{n}")

    async def count_by_categories(self, keys, platform=None):
        return {key: len(self.by_category.get(key, ())) for key in keys}

    async def upsert_many(self, listings, **kwargs):
        for listing in listings:
            self.upserted.append(listing)
            for category in listing["categories"]:
                self.by_category.setdefault(category, set()).add(listing["url"])
        return len(listings), 0

    async def batch_update_by_id(self, updates):
        self.updates.extend(updates)
        return len(updates)

    async def listings_needing_images(self, public_prefix, platform=None, after_id=0, limit=100):
        rows = [
            row
            for row in self.rows
            if row.id > after_id and not (row.image and public_prefix and row.image.startswith(public_prefix))
        ]
        return sorted(rows, key=lambda row: row.id)[:limit]

    async def cached_image_listings(self, public_prefix, after_id=0, limit=100):
        rows = [row for row in self.rows if row.id > after_id and row.image and row.image.startswith(public_prefix)]
        return sorted(rows, key=lambda row: row.id)[:limit]


class FakeImageCache:
    """Caches every URL except the ones listed as failing; `boom` URLs raise unexpected errors."""

    def __init__(self, failing=(), boom=(), on_call: Optional[Callable[[str], None]] = None):
        self.failing = set(failing)
        self.boom = set(boom)
        self.on_call = on_call
        self.calls: list[str] = []

    async def cache(self, url: str):
        self.calls.append(url)
        if self.on_call:
            self.on_call(url)
        if url in self.boom:
            raise RuntimeError("storage exploded")
        if url in self.failing:
            raise ImageDownloadError(url, "status", "404")
        return SimpleNamespace(public_url=f"https://cdn.example.com/cache/{len(self.calls)}.jpg")


def raw(url: str, title: str, moq: str = "100 Piece", image: Optional[str] = None) -> RawListing:
    return RawListing(
        platform="INDIAMART",
        url=url,
        title=title,
        moq=moq,
        price="₹ 450 / Piece",
        image=image,
    )


def one_group_taxonomy(*leaves: dict) -> Taxonomy:
    return Taxonomy.model_validate(
        {"groups": [{"key": "electronics", "label": "Electronics", "leaves": list(leaves)}]}
    )
