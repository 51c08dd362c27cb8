"""Tests for the SQL resolver store against a throwaway SQLite database."""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ammo_resolver.db.models import Base, BrandAlias, Linkage, SourceTrustConfig
from ammo_resolver.db.repository import SqlResolverStore
from ammo_resolver.errors import IdentityKeyConflict, LookupFailure
from ammo_resolver.resolver.core import ProductResolver
from ammo_resolver.resolver.scoring import WeightedExactMatchStrategy
from ammo_resolver.worker.resolver_worker import ResolverWorker

T0 = datetime(2026, 1, 15, 12, 0, 0)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/resolver.db", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def sql_store(session_factory):
    return SqlResolverStore(session_factory)


def _linkage(source_record_id, version, created_at, status="MATCHED"):
    return Linkage(
        source_record_id=source_record_id,
        status=status,
        match_path="IDENTITY_KEY",
        confidence=1.0,
        resolver_version=version,
        evidence={},
        created_at=created_at,
    )


@pytest.mark.asyncio
async def test_claim_marks_processing_with_lease(sql_store, make_record):
    await sql_store.add_source_records([make_record() for _ in range(3)])

    claimed = await sql_store.claim_batch("worker-a", limit=2, max_attempts=3, now=T0)

    assert [r.id for r in claimed] == [1, 2]
    assert {r.status for r in claimed} == {"PROCESSING"}
    assert {r.claimed_by for r in claimed} == {"worker-a"}
    assert {r.attempts for r in claimed} == {1}
    assert len({r.lease_token for r in claimed}) == 1
    assert claimed[0].processing_started_at == T0

    (rest,) = await sql_store.claim_batch("worker-b", limit=10, max_attempts=3, now=T0)
    assert rest.id == 3
    assert rest.lease_token != claimed[0].lease_token
    assert await sql_store.claim_batch("worker-c", limit=10, max_attempts=3) == []


@pytest.mark.asyncio
async def test_completion_requires_matching_lease(sql_store, make_record):
    await sql_store.add_source_records([make_record()])
    (record,) = await sql_store.claim_batch("worker-a", limit=1, max_attempts=3)

    assert await sql_store.mark_resolved(record.id, "not-the-lease") is False
    assert await sql_store.mark_resolved(
        record.id, record.lease_token, {"brand_norm": "federal"}
    ) is True
    # Already completed
    assert await sql_store.mark_error(record.id, record.lease_token, "late") is False

    saved = await sql_store.get_source_record(record.id)
    assert saved.status == "RESOLVED"
    assert saved.brand_norm == "federal"
    assert saved.lease_token is None
    assert saved.processing_started_at is None
    assert saved.claimed_by == "worker-a"


@pytest.mark.asyncio
async def test_error_records_are_retry_eligible(sql_store, make_record):
    await sql_store.add_source_records([make_record()])

    for attempt in range(1, 3):
        (record,) = await sql_store.claim_batch("worker-a", limit=1, max_attempts=2)
        assert record.attempts == attempt
        assert await sql_store.mark_error(record.id, record.lease_token, "x" * 5000)

    assert await sql_store.claim_batch("worker-a", limit=1, max_attempts=2) == []
    saved = await sql_store.get_source_record(record.id)
    assert saved.status == "ERROR"
    assert len(saved.last_error) == 2000


@pytest.mark.asyncio
async def test_reclaim_stale(sql_store, make_record):
    await sql_store.add_source_records([make_record(), make_record()])
    await sql_store.claim_batch("worker-a", limit=1, max_attempts=3, now=T0)
    await sql_store.claim_batch("worker-b", limit=1, max_attempts=3, now=T0 + timedelta(minutes=30))

    reclaimed = await sql_store.reclaim_stale(T0 + timedelta(minutes=10), limit=100)

    assert reclaimed == [1]
    assert await sql_store.reclaim_stale(T0 + timedelta(minutes=10), limit=100) == []
    first = await sql_store.get_source_record(1)
    assert first.status == "PENDING"
    assert first.claimed_by is None
    assert first.lease_token is None
    assert (await sql_store.get_source_record(2)).status == "PROCESSING"


@pytest.mark.asyncio
async def test_touch_refreshes_lease(sql_store, make_record):
    await sql_store.add_source_records([make_record()])
    (record,) = await sql_store.claim_batch("worker-a", limit=1, max_attempts=3, now=T0)

    assert await sql_store.touch(record.id, record.lease_token, now=T0 + timedelta(minutes=20)) is True
    assert await sql_store.reclaim_stale(T0 + timedelta(minutes=10), limit=100) == []
    assert (await sql_store.get_source_record(record.id)).processing_started_at == T0 + timedelta(minutes=20)

    assert await sql_store.touch(record.id, "not-the-lease") is False
    await sql_store.mark_resolved(record.id, record.lease_token)
    assert await sql_store.touch(record.id, record.lease_token) is False


@pytest.mark.asyncio
async def test_catalog_lookups(sql_store, make_product):
    for product in [
        make_product(identity_key="ik1|federal|9mm|115|50|FMJ"),
        make_product(caliber_norm=".223 remington", upc_norm="029465064828"),
        make_product(identity_key="ik1|federal|9mm|124|50|FMJ", grain=124),
        make_product(),
    ]:
        await sql_store.create_canonical_product(product)

    hits = await sql_store.find_by_identity_key("ik1|federal|9mm|115|50|FMJ", limit=2)
    assert [p.id for p in hits] == [1]
    assert await sql_store.find_by_identity_key("ik1|nobody", limit=2) == []

    assert (await sql_store.find_by_upc("029465064828")).id == 2
    assert await sql_store.find_by_upc("000000000000") is None

    candidates = await sql_store.fetch_candidates("9mm", limit=2)
    assert [p.id for p in candidates] == [1, 3]


@pytest.mark.asyncio
async def test_duplicate_identity_key_raises_conflict(sql_store, make_product):
    key = "ik1|federal|9mm|115|50|FMJ"
    await sql_store.create_canonical_product(make_product(identity_key=key))

    with pytest.raises(IdentityKeyConflict) as excinfo:
        await sql_store.create_canonical_product(make_product(identity_key=key))
    assert excinfo.value.identity_key == key

    # Keyless products never collide
    await sql_store.create_canonical_product(make_product(identity_key=None))
    await sql_store.create_canonical_product(make_product(identity_key=None))
    assert [p.id for p in await sql_store.find_by_identity_key(key, limit=2)] == [1]


@pytest.mark.asyncio
async def test_concurrent_resolves_share_one_product(sql_store, metrics, resolver_settings, make_record):
    records = await sql_store.add_source_records(
        [make_record(), make_record(source_id="retailer-b"), make_record(source_id="retailer-c")]
    )
    resolver = ProductResolver(sql_store, WeightedExactMatchStrategy(), metrics, resolver_settings)

    results = await asyncio.gather(resolver.resolve(records[0]), resolver.resolve(records[1]))

    assert sorted(r.status for r in results) == ["CREATED", "MATCHED"]
    assert results[0].canonical_product_id == results[1].canonical_product_id
    hits = await sql_store.find_by_identity_key("ik1|federal|9mm|115|50|FMJ", limit=2)
    assert [p.id for p in hits] == [results[0].canonical_product_id]

    later = await resolver.resolve(records[2])
    assert later.status == "MATCHED"
    assert later.match_path == "IDENTITY_KEY"
    assert later.canonical_product_id == results[0].canonical_product_id
    assert "ambiguousIdentityKey" not in later.evidence


@pytest.mark.asyncio
async def test_linkage_history_is_ordered(sql_store, make_record):
    (record,) = await sql_store.add_source_records([make_record()])
    await sql_store.append_linkage(_linkage(record.id, "1.0.0", T0 + timedelta(minutes=5)))
    await sql_store.append_linkage(_linkage(record.id, "1.1.0", T0))

    history = await sql_store.get_linkages(record.id)

    assert [link.resolver_version for link in history] == ["1.1.0", "1.0.0"]
    assert (await sql_store.get_latest_linkage(record.id)).resolver_version == "1.0.0"
    assert await sql_store.get_linkages(9999) == []
    assert await sql_store.get_latest_linkage(9999) is None


@pytest.mark.asyncio
async def test_trust_config_and_aliases(sql_store, session_factory):
    async with session_factory() as db:
        db.add_all([
            SourceTrustConfig(source_id="retailer-a", upc_trusted=True),
            SourceTrustConfig(source_id="retailer-b", upc_trusted=False),
            BrandAlias(alias_norm="american eagle", canonical_norm="federal", status="ACTIVE"),
            BrandAlias(alias_norm="ae", canonical_norm="federal"),
        ])
        await db.commit()

    assert await sql_store.is_upc_trusted("retailer-a") is True
    assert await sql_store.is_upc_trusted("retailer-b") is False
    assert await sql_store.is_upc_trusted("retailer-z") is False
    assert await sql_store.is_upc_trusted(None) is False
    assert await sql_store.get_active_brand_aliases() == {"american eagle": "federal"}


@pytest.mark.asyncio
async def test_requeue_outdated(sql_store, make_record):
    records = await sql_store.add_source_records([make_record() for _ in range(3)])
    for record in records:
        (claimed,) = await sql_store.claim_batch("worker-a", limit=1, max_attempts=3)
        await sql_store.mark_resolved(claimed.id, claimed.lease_token)

    await sql_store.append_linkage(_linkage(1, "1.0.0", T0))
    await sql_store.append_linkage(_linkage(1, "1.2.0", T0 + timedelta(minutes=1)))
    await sql_store.append_linkage(_linkage(2, "1.2.0", T0))
    await sql_store.append_linkage(_linkage(2, "1.0.0", T0 + timedelta(minutes=1)))
    await sql_store.append_linkage(_linkage(3, "1.1.0", T0))

    requeued = await sql_store.requeue_outdated("1.2.0", limit=100)

    assert requeued == [2, 3]
    for record_id in requeued:
        saved = await sql_store.get_source_record(record_id)
        assert saved.status == "PENDING"
        assert saved.attempts == 0
    assert (await sql_store.get_source_record(1)).status == "RESOLVED"
    # History is untouched
    assert len(await sql_store.get_linkages(2)) == 2


@pytest.mark.asyncio
async def test_worker_resolves_against_sql_store(sql_store, metrics, resolver_settings, make_record):
    await sql_store.add_source_records([make_record(), make_record(source_id="retailer-b")])
    resolver = ProductResolver(sql_store, WeightedExactMatchStrategy(), metrics, resolver_settings)
    worker = ResolverWorker(sql_store, resolver, worker_id="worker-a", batch_size=1)

    (first,) = await worker.run_once()
    (second,) = await worker.run_once()

    assert first.status == "CREATED"
    assert second.status == "MATCHED"
    assert second.match_path == "IDENTITY_KEY"
    assert second.canonical_product_id == first.canonical_product_id

    (latest,) = await sql_store.get_linkages(2)
    assert latest.evidence["identityKey"] == "ik1|federal|9mm|115|50|FMJ"
    saved = await sql_store.get_source_record(2)
    assert saved.status == "RESOLVED"
    assert saved.caliber_norm == "9mm"


@pytest.mark.asyncio
async def test_database_errors_become_lookup_failures(sql_store, engine):
    async with engine.begin() as conn:
        await conn.execute(text("DROP TABLE linkages"))
        await conn.execute(text("DROP TABLE canonical_products"))

    with pytest.raises(LookupFailure):
        await sql_store.find_by_identity_key("ik1|federal|9mm|115|50|FMJ")

    with pytest.raises(LookupFailure):
        await sql_store.get_linkages(1)
