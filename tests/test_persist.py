from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from flyerdeals.ingest.models import FlyerSource
from flyerdeals.ingest.ocr import ExtractedDeal
from flyerdeals.ingest.persist import FlyerPersistError, FlyerPersister, sanitize_zip

NOW = int(datetime.now(timezone.utc).timestamp())
INSERT_STORE = text(
    "INSERT INTO stores (store_id, chain_name, store_name, zip_code) VALUES (:store_id, :chain_name, :store_name, :zip_code)"
)


def make_source(run_id=1001, **overrides):
    data = {
        "merchant": "  ShopRite  ",
        "merchant_slug": "shoprite",
        "flyer_run_id": run_id,
        "name": "Weekly Circular",
        "postal_code": "07001",
        "valid_from": NOW - 86400,
        "valid_to": NOW + 6 * 86400,
        "path": "flyers/abc/",
    }
    data.update(overrides)
    return FlyerSource(**data)


def make_deal(**overrides):
    data = {"product_name": "Milk", "sale_price": 3.99, "confidence": 0.9, "raw_text": "[...]"}
    data.update(overrides)
    return ExtractedDeal(**data)


def fetch_all(engine, sql, **params):
    with engine.connect() as conn:
        return conn.execute(text(sql), params).fetchall()


def test_sanitize_zip():
    assert sanitize_zip(" 07001-1234 ") == "070011234"
    assert sanitize_zip(None) == ""


@pytest.mark.asyncio
async def test_save_creates_flyer_and_deals(engine, settings):
    persister = FlyerPersister(engine, settings)
    result = await persister.save(
        make_source(),
        ["https://cdn.test/a.jpg"],
        [make_deal(), make_deal(product_name="Eggs", sale_price=2.49, regular_price=3.29)],
    )
    assert result.created
    (flyer,) = fetch_all(engine, "SELECT id, store_name, zip_code, status, processed_at, image_urls FROM flyers")
    assert flyer.store_name == "ShopRite"
    assert flyer.zip_code == "07001"
    assert flyer.status == "completed"
    assert flyer.processed_at is not None
    assert "https://cdn.test/a.jpg" in str(flyer.image_urls)
    deals = fetch_all(engine, "SELECT flyer_id, store_name, zip_code, product_name FROM deals ORDER BY product_name")
    assert [deal.product_name for deal in deals] == ["Eggs", "Milk"]
    assert {deal.flyer_id for deal in deals} == {flyer.id}
    assert {deal.zip_code for deal in deals} == {"07001"}


@pytest.mark.asyncio
async def test_save_without_deals_is_pending(engine, settings):
    persister = FlyerPersister(engine, settings)
    await persister.save(make_source(), [], [])
    (flyer,) = fetch_all(engine, "SELECT status, processed_at FROM flyers")
    assert flyer.status == "pending"
    assert flyer.processed_at is None


@pytest.mark.asyncio
async def test_save_is_idempotent(engine, settings):
    persister = FlyerPersister(engine, settings)
    first = await persister.save(make_source(), [], [make_deal()])
    second = await persister.save(make_source(), [], [make_deal()])
    assert first.created
    assert not second.created
    assert second.flyer_id == first.flyer_id
    assert len(fetch_all(engine, "SELECT id FROM flyers")) == 1
    assert len(fetch_all(engine, "SELECT id FROM deals")) == 1


@pytest.mark.asyncio
async def test_reconcile_corrects_zip(engine, settings):
    persister = FlyerPersister(engine, settings)
    await persister.save(make_source(postal_code="07002"), [], [])
    assert await persister.reconcile_existing(1001, "07001")
    (flyer,) = fetch_all(engine, "SELECT zip_code FROM flyers")
    assert flyer.zip_code == "07001"


@pytest.mark.asyncio
async def test_reconcile_ignores_invalid_zip(engine, settings):
    persister = FlyerPersister(engine, settings)
    await persister.save(make_source(), [], [])
    assert await persister.reconcile_existing(1001, "ABC")
    assert not await persister.reconcile_existing(9999, "07001")
    (flyer,) = fetch_all(engine, "SELECT zip_code FROM flyers")
    assert flyer.zip_code == "07001"


@pytest.mark.asyncio
async def test_invalid_zip_gets_placeholder_without_store(engine, settings):
    with engine.begin() as conn:
        conn.execute(INSERT_STORE, {"store_id": "s-1", "chain_name": "ShopRite", "store_name": "ShopRite", "zip_code": "00000"})
    persister = FlyerPersister(engine, settings)
    await persister.save(make_source(postal_code="N/A"), [], [])
    (flyer,) = fetch_all(engine, "SELECT zip_code, store_id FROM flyers")
    assert flyer.zip_code == "00000"
    assert flyer.store_id is None


@pytest.mark.asyncio
async def test_store_match_is_case_insensitive_and_zip_exact(engine, settings):
    with engine.begin() as conn:
        conn.execute(
            INSERT_STORE,
            [
                {"store_id": "s-other-zip", "chain_name": "ShopRite", "store_name": "ShopRite of Linden", "zip_code": "07036"},
                {"store_id": "s-match", "chain_name": "SHOPRITE", "store_name": "ShopRite of Avenel", "zip_code": "07001"},
            ],
        )
    persister = FlyerPersister(engine, settings)
    await persister.save(make_source(merchant="shoprite"), [], [])
    (flyer,) = fetch_all(engine, "SELECT store_id FROM flyers")
    assert flyer.store_id == "s-match"


@pytest.mark.asyncio
async def test_unparseable_validity_uses_fallback(engine, settings):
    persister = FlyerPersister(engine, settings)
    await persister.save(make_source(valid_from="soon", valid_to=None), [], [])
    (flyer,) = fetch_all(engine, "SELECT valid_from, valid_to FROM flyers")
    valid_from = datetime.fromisoformat(str(flyer.valid_from))
    valid_to = datetime.fromisoformat(str(flyer.valid_to))
    assert abs(valid_to - valid_from - timedelta(days=7)) < timedelta(seconds=1)


@pytest.mark.asyncio
async def test_inverted_validity_is_reset(engine, settings):
    persister = FlyerPersister(engine, settings)
    await persister.save(make_source(valid_from=NOW, valid_to=NOW - 3600), [], [])
    (flyer,) = fetch_all(engine, "SELECT valid_from, valid_to FROM flyers")
    valid_from = datetime.fromisoformat(str(flyer.valid_from))
    valid_to = datetime.fromisoformat(str(flyer.valid_to))
    assert abs(valid_to - valid_from - timedelta(days=7)) < timedelta(seconds=1)


@pytest.mark.asyncio
async def test_database_error_is_wrapped(engine, settings):
    with engine.begin() as conn:
        conn.execute(text("DROP TABLE deals"))
    persister = FlyerPersister(engine, settings)
    with pytest.raises(FlyerPersistError):
        await persister.save(make_source(), [], [make_deal()])
    assert fetch_all(engine, "SELECT id FROM flyers") == []


@pytest.mark.asyncio
async def test_lookups_by_zip(engine, settings):
    persister = FlyerPersister(engine, settings)
    await persister.save(make_source(run_id=1), [], [])
    await persister.save(make_source(run_id=2), [], [])
    await persister.save(make_source(run_id=3, postal_code="10001"), [], [])
    assert await persister.stored_run_ids("07001") == {1, 2}
    assert await persister.count_for_zip("07001") == 2
    assert await persister.count_for_zip("99999") == 0


@pytest.mark.asyncio
async def test_delete_expired_removes_deals_first(engine, settings):
    persister = FlyerPersister(engine, settings)
    await persister.save(make_source(run_id=1, valid_from=NOW - 20 * 86400, valid_to=NOW - 10 * 86400), [], [make_deal()])
    await persister.save(make_source(run_id=2), [], [make_deal()])
    flyers_deleted, deals_deleted = await persister.delete_expired()
    assert (flyers_deleted, deals_deleted) == (1, 1)
    assert [row.flyer_run_id for row in fetch_all(engine, "SELECT flyer_run_id FROM flyers")] == [2]
    assert len(fetch_all(engine, "SELECT id FROM deals")) == 1
