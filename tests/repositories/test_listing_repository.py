from sqlalchemy import select

from pipeline.models import Listing, ListingCategory
from pipeline.repositories.listings import SqlListingRepository, prepare_listing


def _listing(**overrides):
    listing = {
        "platform": "INDIAMART",
        "url": "https://www.indiamart.com/proddetail/earbuds-1.html",
        "title": "TWS Wireless Earbuds",
        "image": "https://5.imimg.com/data5/earbuds-500x500.jpg",
        "price": "₹ 450 / Piece",
        "moq": "MOQ: 100 Piece",
        "store_name": "Shree Electronics",
        "categories": ["wireless-earbuds", "electronics"],
        "terms": ["wireless earbuds", "wireless", "earbuds"],
        "quality_class": "ok",
    }
    listing.update(overrides)
    return listing


def test_prepare_listing_derives_numbers_and_drops_empties():
    values, categories = prepare_listing(_listing(description="  ", categories=["a", "a", " b "]))
    assert values["price_min"] == 450.0
    assert values["currency"] == "INR"
    assert values["moq_min"] == 100
    assert "description" not in values
    assert categories == ["a", "b"]


async def test_upsert_inserts_then_merges(db_session):
    repo = SqlListingRepository(db_session)
    listing_id = await repo.upsert_by_url(_listing())
    await db_session.commit()

    same_id = await repo.upsert_by_url(
        _listing(title="TWS Wireless Earbuds v2", image=None, store_name="", categories=["audio"], terms=["tws"])
    )
    await db_session.commit()
    assert same_id == listing_id

    row = (await db_session.execute(select(Listing).where(Listing.id == listing_id))).scalar_one()
    await db_session.refresh(row)
    assert row.title == "TWS Wireless Earbuds v2"
    # Empty incoming fields never blank stored ones.
    assert row.image == "https://5.imimg.com/data5/earbuds-500x500.jpg"
    assert row.store_name == "Shree Electronics"
    assert row.terms == ["tws"]

    keys = (
        await db_session.execute(
            select(ListingCategory.category_key).where(ListingCategory.listing_id == listing_id)
        )
    ).scalars().all()
    assert sorted(keys) == ["audio", "electronics", "wireless-earbuds"]


async def test_count_by_categories(db_session):
    repo = SqlListingRepository(db_session)
    await repo.upsert_by_url(_listing())
    await repo.upsert_by_url(_listing(url="https://www.indiamart.com/proddetail/earbuds-2.html"))
    await repo.upsert_by_url(
        _listing(url="https://www.alibaba.com/product-detail/x.html", platform="ALIBABA", categories=["electronics"])
    )
    await db_session.commit()

    counts = await repo.count_by_categories(["wireless-earbuds", "electronics", "power-banks"])
    assert counts == {"wireless-earbuds": 2, "electronics": 3, "power-banks": 0}
    assert await repo.count_by_category("electronics", platform="INDIAMART") == 2
    assert await repo.count_by_categories([]) == {}


async def test_batch_update_and_image_queries(db_session):
    repo = SqlListingRepository(db_session)
    prefix = "https://cdn.example.com/cache/"
    first = await repo.upsert_by_url(_listing())
    second = await repo.upsert_by_url(_listing(url="https://www.indiamart.com/proddetail/2.html", image=None))
    third = await repo.upsert_by_url(
        _listing(url="https://www.indiamart.com/proddetail/3.html", image=f"{prefix}abc.jpg")
    )
    await db_session.commit()

    needing = await repo.listings_needing_images(prefix)
    assert [row.id for row in needing] == [first, second]
    assert [row.id for row in await repo.listings_needing_images(prefix, after_id=first)] == [second]
    assert [row.id for row in await repo.cached_image_listings(prefix)] == [third]

    touched = await repo.batch_update_by_id(
        [{"id": first, "image": f"{prefix}def.jpg", "ignored": 1}, {"image": "no id"}]
    )
    await db_session.commit()
    assert touched == 1
    assert [row.id for row in await repo.listings_needing_images(prefix)] == [second]
