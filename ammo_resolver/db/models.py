"""SQLAlchemy database models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


class SourceKind(str, Enum):
    DIRECT = "DIRECT"
    AFFILIATE_FEED = "AFFILIATE_FEED"
    OTHER = "OTHER"


class RecordStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    RESOLVED = "RESOLVED"
    ERROR = "ERROR"


class LinkageStatus(str, Enum):
    MATCHED = "MATCHED"
    CREATED = "CREATED"
    UNMATCHED = "UNMATCHED"
    ERROR = "ERROR"


class MatchPath(str, Enum):
    IDENTITY_KEY = "IDENTITY_KEY"
    IDENTITY_KEY_SHOTGUN = "IDENTITY_KEY_SHOTGUN"
    FUZZY = "FUZZY"
    UPC = "UPC"
    NONE = "NONE"


class ReasonCode(str, Enum):
    """Bounded failure reasons, present on a linkage only when status is ERROR."""

    LOOKUP_FAILURE = "LOOKUP_FAILURE"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    SCORING_FAILURE = "SCORING_FAILURE"
    NORMALIZATION_FAILED = "NORMALIZATION_FAILED"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class AliasStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PENDING_REVIEW = "PENDING_REVIEW"
    DISABLED = "DISABLED"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class SourceRecord(Base):
    """Raw product observation from one retail source, awaiting resolution."""

    __tablename__ = "source_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_kind: Mapped[str] = mapped_column(
        String(32), default=SourceKind.OTHER.value, nullable=False
    )

    # Observed fields (as ingested)
    upc: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    caliber: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    grain: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    round_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    raw_payload: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)  # Verbatim, for debugging

    # Derived normalized fields (written by the worker)
    brand_norm: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    caliber_norm: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    upc_norm: Mapped[Optional[str]] = mapped_column(String(14), nullable=True)
    normalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Lifecycle (PENDING -> PROCESSING -> RESOLVED | ERROR)
    status: Mapped[str] = mapped_column(
        String(20), default=RecordStatus.PENDING.value, nullable=False
    )
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_source_records_status_id", "status", "id"),
        Index("ix_source_records_status_started", "status", "processing_started_at"),
    )


class CanonicalProduct(Base):
    """Deduplicated product identity that prices aggregate against."""

    __tablename__ = "canonical_products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    brand_norm: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    caliber_norm: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    grain: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    round_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    load_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    shell_length: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    # Unique among non-null keys (see __table_args__); NULL keys never conflict
    identity_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    upc_norm: Mapped[Optional[str]] = mapped_column(String(14), nullable=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    specs: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    created_by_resolver_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index(
            "uq_canonical_products_identity_key",
            "identity_key",
            unique=True,
            postgresql_where=text("identity_key IS NOT NULL"),
            sqlite_where=text("identity_key IS NOT NULL"),
        ),
    )


class Linkage(Base):
    """Append-only resolution decision for a source record.

    Rows are never updated. The newest row per source record is authoritative;
    older rows remain as the audit trail.
    """

    __tablename__ = "linkages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("source_records.id"), nullable=False, index=True
    )
    canonical_product_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("canonical_products.id"), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    reason_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    match_path: Mapped[str] = mapped_column(String(32), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    resolver_version: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    evidence: Mapped[dict] = mapped_column(JsonType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class SourceTrustConfig(Base):
    """Per-source trust flags managed by the admin surface."""

    __tablename__ = "source_trust_configs"

    source_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    upc_trusted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class BrandAlias(Base):
    """Normalized brand alias mapped onto a canonical brand."""

    __tablename__ = "brand_aliases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    alias_norm: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    canonical_norm: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=AliasStatus.PENDING_REVIEW.value, nullable=False
    )
    source_type: Mapped[str] = mapped_column(String(32), default="MANUAL", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
