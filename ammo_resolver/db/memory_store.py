"""In-process resolver store for tests and local runs."""

import asyncio
import itertools
import uuid
from datetime import datetime
from typing import Iterable, Optional

from ammo_resolver.db.models import (
    AliasStatus,
    BrandAlias,
    CanonicalProduct,
    Linkage,
    RecordStatus,
    SourceKind,
    SourceRecord,
    SourceTrustConfig,
)
from ammo_resolver.errors import IdentityKeyConflict


def _clone(obj):
    """Detached copy of a model instance, so callers never share state with the store."""
    cls = type(obj)
    return cls(**{column.key: getattr(obj, column.key) for column in cls.__table__.columns})


class InMemoryResolverStore:
    """
    Same interface as SqlResolverStore, kept in dictionaries.

    Every mutation runs under one asyncio.Lock, which makes claim-and-mark
    atomic across workers sharing the store within an event loop.
    """

    def __init__(self) -> None:
        self.records: dict[int, SourceRecord] = {}
        self.products: dict[int, CanonicalProduct] = {}
        self.linkages: list[Linkage] = []
        self.trust_configs: dict[str, SourceTrustConfig] = {}
        self.brand_aliases: dict[str, BrandAlias] = {}
        self._lock = asyncio.Lock()
        self._linkage_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    async def add_source_records(self, records: Iterable[SourceRecord]) -> list[SourceRecord]:
        added = []
        async with self._lock:
            for record in records:
                if record.id is None:
                    record.id = max(self.records, default=0) + 1
                now = datetime.utcnow()
                record.status = record.status or RecordStatus.PENDING.value
                record.source_kind = record.source_kind or SourceKind.OTHER.value
                record.attempts = record.attempts or 0
                record.created_at = record.created_at or now
                record.updated_at = record.updated_at or now
                self.records[record.id] = _clone(record)
                added.append(record)
        return added

    async def add_canonical_products(self, products: Iterable[CanonicalProduct]) -> list[CanonicalProduct]:
        """Seed catalog rows as-is. Duplicate identity keys are allowed here, as in legacy data."""
        added = []
        async with self._lock:
            for product in products:
                self._insert_product(product)
                added.append(product)
        return added

    def set_upc_trusted(self, source_id: str, trusted: bool = True) -> None:
        self.trust_configs[source_id] = SourceTrustConfig(
            source_id=source_id, upc_trusted=trusted, updated_at=datetime.utcnow()
        )

    def add_brand_alias(
        self,
        alias_norm: str,
        canonical_norm: str,
        status: str = AliasStatus.ACTIVE.value,
        source_type: str = "MANUAL",
    ) -> None:
        self.brand_aliases[alias_norm] = BrandAlias(
            alias_norm=alias_norm,
            canonical_norm=canonical_norm,
            status=status,
            source_type=source_type,
            created_at=datetime.utcnow(),
        )

    async def get_source_record(self, record_id: int) -> Optional[SourceRecord]:
        record = self.records.get(record_id)
        return _clone(record) if record else None

    # ------------------------------------------------------------------
    # Source record lifecycle
    # ------------------------------------------------------------------

    async def claim_batch(
        self,
        worker_id: str,
        limit: int,
        max_attempts: int,
        now: Optional[datetime] = None,
    ) -> list[SourceRecord]:
        now = now or datetime.utcnow()
        lease_token = uuid.uuid4().hex
        claimed = []
        async with self._lock:
            for record_id in sorted(self.records):
                if len(claimed) >= limit:
                    break
                record = self.records[record_id]
                eligible = record.status == RecordStatus.PENDING.value or (
                    record.status == RecordStatus.ERROR.value and record.attempts < max_attempts
                )
                if not eligible:
                    continue
                record.status = RecordStatus.PROCESSING.value
                record.processing_started_at = now
                record.claimed_by = worker_id
                record.lease_token = lease_token
                record.attempts += 1
                record.updated_at = now
                claimed.append(_clone(record))
        return claimed

    async def _complete(self, record_id: int, lease_token: str, values: dict) -> bool:
        async with self._lock:
            record = self.records.get(record_id)
            if (
                record is None
                or record.status != RecordStatus.PROCESSING.value
                or record.lease_token != lease_token
            ):
                return False
            for key, value in values.items():
                setattr(record, key, value)
            record.lease_token = None
            record.processing_started_at = None
            record.updated_at = datetime.utcnow()
            return True

    async def touch(self, record_id: int, lease_token: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        async with self._lock:
            record = self.records.get(record_id)
            if (
                record is None
                or record.status != RecordStatus.PROCESSING.value
                or record.lease_token != lease_token
            ):
                return False
            record.processing_started_at = now
            record.updated_at = now
            return True

    async def mark_resolved(
        self,
        record_id: int,
        lease_token: str,
        normalized_fields: Optional[dict] = None,
    ) -> bool:
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
        values = dict(normalized_fields or {})
        values.update(status=RecordStatus.ERROR.value, last_error=error[:2000])
        return await self._complete(record_id, lease_token, values)

    async def reclaim_stale(self, cutoff: datetime, limit: int) -> list[int]:
        reclaimed = []
        async with self._lock:
            stale = sorted(
                (
                    record
                    for record in self.records.values()
                    if record.status == RecordStatus.PROCESSING.value
                    and record.processing_started_at is not None
                    and record.processing_started_at < cutoff
                ),
                key=lambda record: (record.processing_started_at, record.id),
            )
            for record in stale[:limit]:
                record.status = RecordStatus.PENDING.value
                record.processing_started_at = None
                record.claimed_by = None
                record.lease_token = None
                record.updated_at = datetime.utcnow()
                reclaimed.append(record.id)
        return sorted(reclaimed)

    async def requeue_outdated(self, resolver_version: str, limit: int) -> list[int]:
        requeued = []
        async with self._lock:
            for record_id in sorted(self.records):
                if len(requeued) >= limit:
                    break
                record = self.records[record_id]
                if record.status != RecordStatus.RESOLVED.value:
                    continue
                latest = self._latest_linkage(record_id)
                if latest is not None and latest.resolver_version != resolver_version:
                    record.status = RecordStatus.PENDING.value
                    record.attempts = 0
                    record.updated_at = datetime.utcnow()
                    requeued.append(record_id)
        return requeued

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def find_by_identity_key(self, identity_key: str, limit: int = 2) -> list[CanonicalProduct]:
        hits = [
            self.products[product_id]
            for product_id in sorted(self.products)
            if self.products[product_id].identity_key == identity_key
        ]
        return [_clone(product) for product in hits[:limit]]

    async def find_by_upc(self, upc_norm: str) -> Optional[CanonicalProduct]:
        for product_id in sorted(self.products):
            if self.products[product_id].upc_norm == upc_norm:
                return _clone(self.products[product_id])
        return None

    async def fetch_candidates(self, caliber_norm: str, limit: int) -> list[CanonicalProduct]:
        bucket = [
            self.products[product_id]
            for product_id in sorted(self.products)
            if self.products[product_id].caliber_norm == caliber_norm
        ]
        return [_clone(product) for product in bucket[:limit]]

    def _insert_product(self, product: CanonicalProduct) -> None:
        if product.id is None:
            product.id = max(self.products, default=0) + 1
        product.created_at = product.created_at or datetime.utcnow()
        self.products[product.id] = _clone(product)

    async def create_canonical_product(self, product: CanonicalProduct) -> CanonicalProduct:
        """Insert a product; raises IdentityKeyConflict when its identity key is taken."""
        async with self._lock:
            if product.identity_key is not None and any(
                existing.identity_key == product.identity_key for existing in self.products.values()
            ):
                raise IdentityKeyConflict(product.identity_key)
            self._insert_product(product)
        return product

    # ------------------------------------------------------------------
    # Linkages
    # ------------------------------------------------------------------

    async def append_linkage(self, linkage: Linkage) -> Linkage:
        async with self._lock:
            linkage.id = next(self._linkage_ids)
            linkage.created_at = linkage.created_at or datetime.utcnow()
            self.linkages.append(_clone(linkage))
        return linkage

    def _latest_linkage(self, source_record_id: int) -> Optional[Linkage]:
        history = [link for link in self.linkages if link.source_record_id == source_record_id]
        if not history:
            return None
        return max(history, key=lambda link: (link.created_at, link.id))

    async def get_linkages(self, source_record_id: int) -> list[Linkage]:
        history = [link for link in self.linkages if link.source_record_id == source_record_id]
        history.sort(key=lambda link: (link.created_at, link.id))
        return [_clone(link) for link in history]

    async def get_latest_linkage(self, source_record_id: int) -> Optional[Linkage]:
        latest = self._latest_linkage(source_record_id)
        return _clone(latest) if latest else None

    # ------------------------------------------------------------------
    # Externally managed configuration
    # ------------------------------------------------------------------

    async def is_upc_trusted(self, source_id: Optional[str]) -> bool:
        config = self.trust_configs.get(source_id) if source_id else None
        return bool(config and config.upc_trusted)

    async def get_active_brand_aliases(self) -> dict[str, str]:
        return {
            alias.alias_norm: alias.canonical_norm
            for alias in self.brand_aliases.values()
            if alias.status == AliasStatus.ACTIVE.value
        }
