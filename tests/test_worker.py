"""Tests for the resolver worker claim/process loop."""

import asyncio
from datetime import datetime, timedelta

import pytest

from ammo_resolver.errors import LookupFailure, PersistenceFailure
from ammo_resolver.resolver.core import ProductResolver
from ammo_resolver.resolver.scoring import WeightedExactMatchStrategy
from ammo_resolver.worker.resolver_worker import ResolverWorker
from ammo_resolver.worker.sweeper import StaleRecordSweeper


def _worker(store, resolver, worker_id="worker-a", **kwargs):
    kwargs.setdefault("batch_size", 5)
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("poll_interval_seconds", 0.01)
    return ResolverWorker(store, resolver, worker_id=worker_id, **kwargs)


@pytest.mark.asyncio
async def test_run_once_resolves_claimed_records(store, resolver, make_record):
    records = await store.add_source_records([make_record(), make_record(brand=None)])
    worker = _worker(store, resolver)

    results = await worker.run_once()

    assert [r.status for r in results] == ["CREATED", "UNMATCHED"]
    for record in records:
        saved = await store.get_source_record(record.id)
        assert saved.status == "RESOLVED"
        assert saved.lease_token is None
        assert saved.processing_started_at is None
        assert saved.claimed_by == "worker-a"
        assert saved.attempts == 1
        assert saved.normalized_at is not None

    first = await store.get_source_record(records[0].id)
    assert first.brand_norm == "federal"
    assert first.caliber_norm == "9mm"
    assert worker.processed == 2
    assert await worker.run_once() == []


@pytest.mark.asyncio
async def test_concurrent_workers_never_double_process(store, resolver, make_record):
    records = await store.add_source_records(
        [make_record(round_count=n) for n in range(1, 41)]
    )
    workers = [_worker(store, resolver, worker_id=f"worker-{i}", batch_size=3) for i in range(4)]

    async def drain(worker):
        while await worker.run_once():
            await asyncio.sleep(0)

    await asyncio.gather(*(drain(worker) for worker in workers))

    for record in records:
        history = await store.get_linkages(record.id)
        assert len(history) == 1
        assert (await store.get_source_record(record.id)).status == "RESOLVED"

    assert sum(worker.processed for worker in workers) == len(records)
    assert sum(worker.lost_leases for worker in workers) == 0


@pytest.mark.asyncio
async def test_completion_is_guarded_by_lease_token(store, metrics, resolver_settings, make_record):
    class SweptMidFlight(ProductResolver):
        async def resolve(self, record):
            result = await super().resolve(record)
            # The lease goes stale and another worker takes the record over
            await store.reclaim_stale(datetime.utcnow() + timedelta(seconds=1), 100)
            await store.claim_batch("worker-b", limit=10, max_attempts=3)
            return result

    (record,) = await store.add_source_records([make_record()])
    resolver = SweptMidFlight(store, WeightedExactMatchStrategy(), metrics, resolver_settings)
    worker = _worker(store, resolver)

    results = await worker.run_once()

    assert len(results) == 1
    assert worker.lost_leases == 1
    assert worker.processed == 0
    saved = await store.get_source_record(record.id)
    assert saved.status == "PROCESSING"
    assert saved.claimed_by == "worker-b"
    assert saved.attempts == 2


@pytest.mark.asyncio
async def test_record_swept_while_queued_in_batch_is_skipped(
    store, resolver, metrics, resolver_settings, make_record
):
    first, second = await store.add_source_records([make_record(), make_record()])
    other_worker = _worker(store, resolver, worker_id="worker-b")
    taken_over = []

    class SweepBeforeFirstRecord(ProductResolver):
        async def resolve(self, record):
            if not taken_over:
                # The queued record has been waiting long enough to look stale
                store.records[second.id].processing_started_at = datetime.utcnow() - timedelta(hours=1)
                assert await StaleRecordSweeper(store, timeout_seconds=600).sweep_once() == 1
                taken_over.extend(await other_worker.run_once())
            return await super().resolve(record)

    worker = _worker(
        store, SweepBeforeFirstRecord(store, WeightedExactMatchStrategy(), metrics, resolver_settings)
    )

    results = await worker.run_once()

    assert [r.source_record_id for r in results] == [first.id]
    assert [r.source_record_id for r in taken_over] == [second.id]
    assert worker.processed == 1
    assert worker.lost_leases == 1
    assert other_worker.processed == 1
    assert len(await store.get_linkages(second.id)) == 1
    saved = await store.get_source_record(second.id)
    assert saved.status == "RESOLVED"
    assert saved.claimed_by == "worker-b"


@pytest.mark.asyncio
async def test_error_records_retried_until_max_attempts(store, resolver, make_record):
    async def unavailable(*args, **kwargs):
        raise LookupFailure("connection refused")

    store.fetch_candidates = unavailable
    (record,) = await store.add_source_records([make_record()])
    worker = _worker(store, resolver, max_attempts=3)

    for attempt in range(1, 4):
        (result,) = await worker.run_once()
        assert result.status == "ERROR"
        saved = await store.get_source_record(record.id)
        assert saved.status == "ERROR"
        assert saved.attempts == attempt
        assert saved.last_error == "LOOKUP_FAILURE"

    assert await worker.run_once() == []
    history = await store.get_linkages(record.id)
    assert [link.reason_code for link in history] == ["LOOKUP_FAILURE"] * 3


@pytest.mark.asyncio
async def test_unwritable_linkage_marks_record_error(store, resolver, make_record):
    async def down(*args, **kwargs):
        raise PersistenceFailure("database down")

    store.append_linkage = down
    (record,) = await store.add_source_records([make_record()])
    worker = _worker(store, resolver)

    assert await worker.run_once() == []

    saved = await store.get_source_record(record.id)
    assert saved.status == "ERROR"
    assert saved.last_error.startswith("PERSISTENCE_FAILURE")
    assert saved.lease_token is None
    assert store.linkages == []


@pytest.mark.asyncio
async def test_run_forever_until_stopped(store, resolver, make_record):
    records = await store.add_source_records([make_record(round_count=n) for n in (20, 50, 100)])
    worker = _worker(store, resolver, batch_size=2)

    task = asyncio.create_task(worker.run_forever())
    for _ in range(200):
        if worker.processed == len(records):
            break
        await asyncio.sleep(0.01)

    worker.stop()
    await asyncio.wait_for(task, timeout=2)

    assert worker.processed == len(records)
    assert task.done()
