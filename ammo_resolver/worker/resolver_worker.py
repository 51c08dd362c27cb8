"""Claim-and-resolve worker loop."""

import asyncio
import uuid
from datetime import datetime
from typing import Optional

from ammo_resolver.config import settings
from ammo_resolver.db.models import SourceRecord
from ammo_resolver.errors import ResolverError
from ammo_resolver.logging_config import get_logger
from ammo_resolver.resolver.core import ProductResolver, ResolutionResult


def _normalized_fields(result: Optional[ResolutionResult]) -> Optional[dict]:
    if result is None or result.normalized is None:
        return None
    normalized = result.normalized
    return {
        "brand_norm": normalized.brand_norm,
        "caliber_norm": normalized.caliber_norm,
        "upc_norm": normalized.upc_norm,
        "normalized_at": datetime.utcnow(),
    }


class ResolverWorker:
    """
    Resolve claimed source records one at a time.

    Several workers (tasks or processes) can share one store: the store's
    atomic claim is the only coordination. Completion is conditioned on the
    lease token, so a worker whose lease was swept cannot overwrite the
    record's new owner.
    """

    def __init__(
        self,
        store,
        resolver: ProductResolver,
        worker_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.batch_size = batch_size or settings.worker_batch_size
        self.max_attempts = max_attempts or settings.worker_max_attempts
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.worker_poll_interval_seconds
        )
        self.logger = get_logger(__name__, worker_id=self.worker_id)
        self._stop_event = asyncio.Event()

        self.processed = 0
        self.lost_leases = 0

    async def run_once(self) -> list[ResolutionResult]:
        """
        Claim one batch and resolve it sequentially.

        Returns:
            Results for the records resolved in this round (empty when idle)
        """
        claimed = await self.store.claim_batch(
            self.worker_id,
            limit=self.batch_size,
            max_attempts=self.max_attempts,
        )
        if not claimed:
            return []

        self.logger.debug(f"Claimed {len(claimed)} records")

        results = []
        for record in claimed:
            result = await self._process(record)
            if result is not None:
                results.append(result)
        return results

    async def _process(self, record: SourceRecord) -> Optional[ResolutionResult]:
        lease_token = record.lease_token
        if not await self.store.touch(record.id, lease_token):
            # Swept while queued behind earlier records of the batch
            self.lost_leases += 1
            self.logger.warning(f"Lease lost for source record {record.id} before resolution; skipped")
            return None

        try:
            result = await self.resolver.resolve(record)
        except ResolverError as e:
            # No linkage could be written; leave an ERROR status for retry, or
            # let the sweeper reclaim the record if even that fails
            self.logger.error(f"Resolution of source record {record.id} aborted: {e}")
            try:
                await self.store.mark_error(record.id, lease_token, f"{e.reason_code}: {e}")
            except ResolverError as mark_error:
                self.logger.error(
                    f"Could not mark source record {record.id} as ERROR: {mark_error}"
                )
            return None

        if result.is_error:
            completed = await self.store.mark_error(
                record.id,
                lease_token,
                result.reason_code or "SYSTEM_ERROR",
                normalized_fields=_normalized_fields(result),
            )
        else:
            completed = await self.store.mark_resolved(
                record.id,
                lease_token,
                normalized_fields=_normalized_fields(result),
            )

        if not completed:
            self.lost_leases += 1
            self.logger.warning(
                f"Lease lost for source record {record.id}; linkage {result.linkage.id} "
                "kept, status left to the current owner"
            )
        else:
            self.processed += 1

        return result

    async def run_forever(self) -> None:
        """Poll for work until stop() is called."""
        self.logger.info(f"Resolver worker started (batch_size={self.batch_size})")
        self._stop_event.clear()

        while not self._stop_event.is_set():
            try:
                results = await self.run_once()
            except ResolverError as e:
                self.logger.error(f"Claim round failed: {e}")
                results = []

            if results:
                continue

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

        self.logger.info(f"Resolver worker stopped after {self.processed} records")

    def stop(self) -> None:
        self._stop_event.set()
