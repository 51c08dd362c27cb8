"""Tests for stale record reclaim."""

import asyncio
import logging
from datetime import datetime, timedelta

import pytest

from ammo_resolver.worker.resolver_worker import ResolverWorker
from ammo_resolver.worker.sweeper import SWEEPER_JOB_ID, StaleRecordSweeper

T0 = datetime(2026, 1, 15, 12, 0, 0)


@pytest.mark.asyncio
async def test_stale_record_reclaimed_exactly_once(store, make_record):
    (record,) = await store.add_source_records([make_record()])
    (claimed,) = await store.claim_batch("crashed-worker", limit=10, max_attempts=3, now=T0)
    sweeper = StaleRecordSweeper(store, timeout_seconds=600)

    assert await sweeper.sweep_once(now=T0 + timedelta(seconds=601)) == 1
    assert await sweeper.sweep_once(now=T0 + timedelta(seconds=602)) == 0

    saved = await store.get_source_record(record.id)
    assert saved.status == "PENDING"
    assert saved.lease_token is None
    assert saved.claimed_by is None
    assert saved.processing_started_at is None

    # The dead worker's lease no longer completes the record
    assert await store.mark_resolved(record.id, claimed.lease_token) is False


@pytest.mark.asyncio
async def test_in_flight_record_is_not_reclaimed(store, make_record):
    await store.add_source_records([make_record()])
    await store.claim_batch("live-worker", limit=10, max_attempts=3, now=T0)
    sweeper = StaleRecordSweeper(store, timeout_seconds=600)

    assert await sweeper.sweep_once(now=T0 + timedelta(seconds=599)) == 0
    assert await sweeper.sweep_once(now=T0 + timedelta(seconds=600)) == 0


@pytest.mark.asyncio
async def test_concurrent_sweeps_reclaim_once(store, make_record):
    await store.add_source_records([make_record(), make_record()])
    await store.claim_batch("crashed-worker", limit=10, max_attempts=3, now=T0)
    sweepers = [StaleRecordSweeper(store, timeout_seconds=600) for _ in range(3)]

    counts = await asyncio.gather(
        *(sweeper.sweep_once(now=T0 + timedelta(hours=1)) for sweeper in sweepers)
    )

    assert sum(counts) == 2


@pytest.mark.asyncio
async def test_reclaimed_record_is_resolved_by_next_worker(store, resolver, make_record):
    (record,) = await store.add_source_records([make_record()])
    await store.claim_batch("crashed-worker", limit=10, max_attempts=3, now=T0)
    await StaleRecordSweeper(store, timeout_seconds=600).sweep_once(now=T0 + timedelta(hours=1))

    worker = ResolverWorker(store, resolver, worker_id="worker-b", batch_size=5, max_attempts=3)
    (result,) = await worker.run_once()

    assert result.status == "CREATED"
    saved = await store.get_source_record(record.id)
    assert saved.status == "RESOLVED"
    assert saved.claimed_by == "worker-b"
    assert saved.attempts == 2
    assert len(await store.get_linkages(record.id)) == 1


@pytest.mark.asyncio
async def test_start_and_stop(store):
    sweeper = StaleRecordSweeper(store, timeout_seconds=600, interval_seconds=30)
    assert not sweeper.running

    sweeper.start()
    try:
        assert sweeper.running
        job = sweeper._scheduler.get_job(SWEEPER_JOB_ID)
        assert job is not None
        assert job.max_instances == 1

        # Starting twice keeps the one scheduler
        scheduler = sweeper._scheduler
        sweeper.start()
        assert sweeper._scheduler is scheduler
    finally:
        sweeper.stop()

    assert not sweeper.running
    sweeper.stop()


def test_low_timeout_logs_warning(store, caplog):
    with caplog.at_level(logging.WARNING, logger="ammo_resolver.worker.sweeper"):
        StaleRecordSweeper(store, timeout_seconds=5)

    assert any("below" in message for message in caplog.messages)
