from unittest.mock import AsyncMock, MagicMock

from pipeline.services.listing_store import ListingStore


def _listing(n: int) -> dict:
    return {
        "platform": "INDIAMART",
        "url": f"https://www.indiamart.com/proddetail/item-{n}.html",
        "title": f"Steel Water Bottle {n}",
        "categories": ["steel-water-bottles"],
    }


async def test_upsert_many_commits_each_listing(store):
    saved, failed = await store.upsert_many([_listing(n) for n in range(5)], batch_size=2)

    assert (saved, failed) == (5, 0)
    assert await store.count_by_category("steel-water-bottles") == 5
    assert await store.count_by_categories(["steel-water-bottles", "lunch-boxes"]) == {
        "steel-water-bottles": 5,
        "lunch-boxes": 0,
    }


async def test_upsert_many_counts_failures_and_retries(session_factory):
    repo = MagicMock()
    repo.upsert_by_url = AsyncMock(side_effect=[RuntimeError("deadlock"), 1, RuntimeError("x"), RuntimeError("x")])
    store = ListingStore(session_factory, repository_factory=lambda session: repo, retry_delay_s=0)

    saved, failed = await store.upsert_many([_listing(1), _listing(2)], retries=1)

    assert (saved, failed) == (1, 1)
    assert repo.upsert_by_url.await_count == 4


async def test_upsert_many_can_stop_on_first_failure(session_factory):
    repo = MagicMock()
    repo.upsert_by_url = AsyncMock(side_effect=RuntimeError("down"))
    store = ListingStore(session_factory, repository_factory=lambda session: repo, retry_delay_s=0)

    saved, failed = await store.upsert_many([_listing(1), _listing(2)], retries=0, continue_on_error=False)

    assert (saved, failed) == (0, 1)
    assert repo.upsert_by_url.await_count == 1


async def test_batch_update_by_id_skips_empty(store):
    assert await store.batch_update_by_id([]) == 0
    await store.upsert(_listing(1))
    rows = await store.listings_needing_images("https://cdn.example.com/cache/")
    assert await store.batch_update_by_id([{"id": rows[0].id, "image": "https://cdn.example.com/cache/a.jpg"}]) == 1
    assert await store.cached_image_listings("https://cdn.example.com/cache/") != []
