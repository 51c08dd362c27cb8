"""SQL-backed resolver store."""

import logging
import uuid
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ammo_resolver.db.models import (
    AliasStatus,
    BrandAlias,
    CanonicalProduct,
    Linkage,
    RecordStatus,
    SourceRecord,
    SourceTrustConfig,
)
from ammo_resolver.errors import IdentityKeyConflict, LookupFailure, PersistenceFailure

logger = logging.getLogger(__name__)


class SqlResolverStore:
    """
    Resolver persistence over SQLAlchemy async sessions.

    Claims use a conditional UPDATE over a row-locked subselect
    (FOR UPDATE SKIP LOCKED on PostgreSQL), so concurrent workers in any
    number of processes never claim the same record. SQLAlchemy errors are
    re-raised as LookupFailure (reads) or PersistenceFailure (writes).
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from ammo_resolver.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    def _session(self) -> AsyncSession:
        return self._session_factory()

    # ------------------------------------------------------------------
    # Source record lifecycle
    # ------------------------------------------------------------------

    async def add_source_records(self, records: Iterable[SourceRecord]) -> list[SourceRecord]:
        """Insert raw records (ingestion and tests)."""
        records = list(records)
        try:
            async with self._session() as db:
                db.add_all(records)
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to insert source records: {e}") from e
        return records

    async def get_source_record(self, record_id: int) -> Optional[SourceRecord]:
        try:
            async with self._session() as db:
                return await db.get(SourceRecord, record_id)
        except SQLAlchemyError as e:
            raise LookupFailure(f"Failed to load source record {record_id}: {e}") from e

    async def claim_batch(
        self,
        worker_id: str,
        limit: int,
        max_attempts: int,
        now: Optional[datetime] = None,
    ) -> list[SourceRecord]:
        """
        Atomically claim up to `limit` PENDING or retry-eligible ERROR records.

        Every claimed record is moved to PROCESSING with this round's lease
        token, claimed_by and processing_started_at set and attempts bumped.

        Returns:
            Claimed records ordered by id
        """
        now = now or datetime.utcnow()
        lease_token = uuid.uuid4().hex

        claimable = or_(
            SourceRecord.status == RecordStatus.PENDING.value,
            and_(
                SourceRecord.status == RecordStatus.ERROR.value,
                SourceRecord.attempts < max_attempts,
            ),
        )
        locked_ids = (
            select(SourceRecord.id)
            .where(claimable)
            .order_by(SourceRecord.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(SourceRecord)
            .where(SourceRecord.id.in_(locked_ids))
            .where(claimable)
            .values(
                status=RecordStatus.PROCESSING.value,
                processing_started_at=now,
                claimed_by=worker_id,
                lease_token=lease_token,
                attempts=SourceRecord.attempts + 1,
                updated_at=now,
            )
            .returning(SourceRecord)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self._session() as db:
                claimed = list((await db.scalars(stmt)).all())
                await db.commit()
        except SQLAlchemyError as e:
            raise LookupFailure(f"Failed to claim source records: {e}") from e

        claimed.sort(key=lambda record: record.id)
        return claimed

    async def _complete(self, record_id: int, lease_token: str, values: dict) -> bool:
        now = datetime.utcnow()
        stmt = (
            update(SourceRecord)
            .where(
                SourceRecord.id == record_id,
                SourceRecord.status == RecordStatus.PROCESSING.value,
                SourceRecord.lease_token == lease_token,
            )
            .values(lease_token=None, processing_started_at=None, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session() as db:
                result = await db.execute(stmt)
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to complete source record {record_id}: {e}") from e
        return result.rowcount == 1

    async def touch(self, record_id: int, lease_token: str, now: Optional[datetime] = None) -> bool:
        """
        Restart the lease clock of a claimed record just before resolving it.

        Returns:
            False when the lease was swept or taken over; the record must be skipped
        """
        now = now or datetime.utcnow()
        stmt = (
            update(SourceRecord)
            .where(
                SourceRecord.id == record_id,
                SourceRecord.status == RecordStatus.PROCESSING.value,
                SourceRecord.lease_token == lease_token,
            )
            .values(processing_started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session() as db:
                result = await db.execute(stmt)
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to refresh lease for source record {record_id}: {e}") from e
        return result.rowcount == 1

    async def mark_resolved(
        self,
        record_id: int,
        lease_token: str,
        normalized_fields: Optional[dict] = None,
    ) -> bool:
        """Finish a claimed record as RESOLVED; False when the lease is no longer ours."""
        values = dict(normalized_fields or {})
        values.update(status=RecordStatus.RESOLVED.value, last_error=None)
        return await self._complete(record_id, lease_token, values)

    async def mark_error(
        self,
        record_id: int,
        lease_token: str,
        error: str,
        normalized_fields: Optional[dict] = None,
    ) -> bool:
        """Finish a claimed record as ERROR; False when the lease is no longer ours."""
        values = dict(normalized_fields or {})
        values.update(status=RecordStatus.ERROR.value, last_error=error[:2000])
        return await self._complete(record_id, lease_token, values)

    async def reclaim_stale(self, cutoff: datetime, limit: int) -> list[int]:
        """
        Return PROCESSING records started before `cutoff` to PENDING.

        The status and timestamp are re-checked in the UPDATE itself, so a
        stale lease is reclaimed once even with several sweepers running.

        Returns:
            Ids of the reclaimed records
        """
        stale = and_(
            SourceRecord.status == RecordStatus.PROCESSING.value,
            SourceRecord.processing_started_at < cutoff,
        )
        stale_ids = (
            select(SourceRecord.id)
            .where(stale)
            .order_by(SourceRecord.processing_started_at, SourceRecord.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(SourceRecord)
            .where(SourceRecord.id.in_(stale_ids))
            .where(stale)
            .values(
                status=RecordStatus.PENDING.value,
                processing_started_at=None,
                claimed_by=None,
                lease_token=None,
                updated_at=datetime.utcnow(),
            )
            .returning(SourceRecord.id)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session() as db:
                reclaimed = sorted((await db.execute(stmt)).scalars().all())
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to reclaim stale records: {e}") from e
        return reclaimed

    async def requeue_outdated(self, resolver_version: str, limit: int) -> list[int]:
        """
        Reset RESOLVED records whose latest linkage predates `resolver_version`
        back to PENDING. Reprocessing appends new linkage rows; history stays.
        """
        latest = (
            select(
                Linkage.source_record_id,
                Linkage.resolver_version,
                func.row_number()
                .over(
                    partition_by=Linkage.source_record_id,
                    order_by=(Linkage.created_at.desc(), Linkage.id.desc()),
                )
                .label("rn"),
            )
            .subquery()
        )
        outdated_ids = (
            select(latest.c.source_record_id)
            .join(SourceRecord, SourceRecord.id == latest.c.source_record_id)
            .where(
                latest.c.rn == 1,
                latest.c.resolver_version != resolver_version,
                SourceRecord.status == RecordStatus.RESOLVED.value,
            )
            .order_by(latest.c.source_record_id)
            .limit(limit)
            .scalar_subquery()
        )
        stmt = (
            update(SourceRecord)
            .where(
                SourceRecord.id.in_(outdated_ids),
                SourceRecord.status == RecordStatus.RESOLVED.value,
            )
            .values(status=RecordStatus.PENDING.value, attempts=0, updated_at=datetime.utcnow())
            .returning(SourceRecord.id)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session() as db:
                requeued = sorted((await db.execute(stmt)).scalars().all())
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to requeue records: {e}") from e
        return requeued

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def find_by_identity_key(self, identity_key: str, limit: int = 2) -> list[CanonicalProduct]:
        """Products sharing an identity key, lowest id first. More than one means ambiguity."""
        query = (
            select(CanonicalProduct)
            .where(CanonicalProduct.identity_key == identity_key)
            .order_by(CanonicalProduct.id)
            .limit(limit)
        )
        try:
            async with self._session() as db:
                return list((await db.scalars(query)).all())
        except SQLAlchemyError as e:
            raise LookupFailure(f"Identity key lookup failed: {e}") from e

    async def find_by_upc(self, upc_norm: str) -> Optional[CanonicalProduct]:
        query = (
            select(CanonicalProduct)
            .where(CanonicalProduct.upc_norm == upc_norm)
            .order_by(CanonicalProduct.id)
            .limit(1)
        )
        try:
            async with self._session() as db:
                return (await db.scalars(query)).first()
        except SQLAlchemyError as e:
            raise LookupFailure(f"UPC lookup failed: {e}") from e

    async def fetch_candidates(self, caliber_norm: str, limit: int) -> list[CanonicalProduct]:
        """Bounded fuzzy candidate set: same caliber bucket, ordered by id."""
        query = (
            select(CanonicalProduct)
            .where(CanonicalProduct.caliber_norm == caliber_norm)
            .order_by(CanonicalProduct.id)
            .limit(limit)
        )
        try:
            async with self._session() as db:
                return list((await db.scalars(query)).all())
        except SQLAlchemyError as e:
            raise LookupFailure(f"Candidate fetch failed for caliber {caliber_norm}: {e}") from e

    async def create_canonical_product(self, product: CanonicalProduct) -> CanonicalProduct:
        """
        Insert a new canonical product.

        Raises:
            IdentityKeyConflict: Another worker already created a product with this
                identity key (unique index on non-null keys)
        """
        if product.created_at is None:
            product.created_at = datetime.utcnow()
        try:
            async with self._session() as db:
                db.add(product)
                await db.commit()
        except IntegrityError as e:
            if product.identity_key is None:
                raise PersistenceFailure(f"Failed to create canonical product: {e}") from e
            raise IdentityKeyConflict(
                product.identity_key, f"Identity key {product.identity_key} already exists: {e}"
            ) from e
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to create canonical product: {e}") from e
        return product

    # ------------------------------------------------------------------
    # Linkages
    # ------------------------------------------------------------------

    async def append_linkage(self, linkage: Linkage) -> Linkage:
        """Insert a linkage row. Linkages are never updated."""
        if linkage.created_at is None:
            linkage.created_at = datetime.utcnow()
        try:
            async with self._session() as db:
                db.add(linkage)
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                f"Failed to append linkage for source record {linkage.source_record_id}: {e}"
            ) from e
        return linkage

    async def get_linkages(self, source_record_id: int) -> list[Linkage]:
        """Linkage history for a record, oldest first."""
        query = (
            select(Linkage)
            .where(Linkage.source_record_id == source_record_id)
            .order_by(Linkage.created_at, Linkage.id)
        )
        try:
            async with self._session() as db:
                return list((await db.scalars(query)).all())
        except SQLAlchemyError as e:
            raise LookupFailure(f"Failed to load linkages for {source_record_id}: {e}") from e

    async def get_latest_linkage(self, source_record_id: int) -> Optional[Linkage]:
        query = (
            select(Linkage)
            .where(Linkage.source_record_id == source_record_id)
            .order_by(Linkage.created_at.desc(), Linkage.id.desc())
            .limit(1)
        )
        try:
            async with self._session() as db:
                return (await db.scalars(query)).first()
        except SQLAlchemyError as e:
            raise LookupFailure(f"Failed to load latest linkage for {source_record_id}: {e}") from e

    # ------------------------------------------------------------------
    # Externally managed configuration
    # ------------------------------------------------------------------

    async def is_upc_trusted(self, source_id: Optional[str]) -> bool:
        if not source_id:
            return False
        try:
            async with self._session() as db:
                config = await db.get(SourceTrustConfig, source_id)
        except SQLAlchemyError as e:
            raise LookupFailure(f"Failed to load trust config for {source_id}: {e}") from e
        return bool(config and config.upc_trusted)

    async def get_active_brand_aliases(self) -> dict[str, str]:
        query = select(BrandAlias.alias_norm, BrandAlias.canonical_norm).where(
            BrandAlias.status == AliasStatus.ACTIVE.value
        )
        try:
            async with self._session() as db:
                rows = (await db.execute(query)).all()
        except SQLAlchemyError as e:
            raise LookupFailure(f"Failed to load brand aliases: {e}") from e
        return {alias: canonical for alias, canonical in rows}
