"""Normalize raw source records into matchable inputs."""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from ammo_resolver.db.models import SourceKind, SourceRecord
from ammo_resolver.normalize.ammo import (
    coerce_positive_int,
    extract_caliber,
    extract_grain,
    extract_load_type,
    extract_round_count,
    extract_shell_length,
    is_shotgun_caliber,
    normalize_caliber,
)
from ammo_resolver.normalize.brand import normalize_brand
from ammo_resolver.normalize.upc import to_canonical_upc
from ammo_resolver.resolver.text_similarity import tokenize

logger = logging.getLogger(__name__)

_SOURCE_KINDS = frozenset(kind.value for kind in SourceKind)

# Closed set; also used as the metric label vocabulary
MISSING_FIELD_LABELS = (
    "brandNorm",
    "caliberNorm",
    "grain",
    "packCount",
    "titleSignature",
    "loadType",
    "shellLength",
)


@dataclass
class NormalizedInput:
    """Matchable view of one source record."""

    source_record_id: Optional[int]
    source_id: Optional[str]
    source_kind: str
    brand_norm: Optional[str]
    caliber_norm: Optional[str]
    grain: Optional[int]
    round_count: Optional[int]
    load_type: Optional[str]
    shell_length: Optional[str]
    title: str
    title_signature: Optional[str]
    upc_norm: Optional[str]
    is_shotgun: bool = False
    brand_alias_from: Optional[str] = None  # Pre-alias brand when an alias was applied
    missing_fields: list[str] = field(default_factory=list)

    def evidence(self) -> dict:
        """Inputs as recorded on the linkage."""
        return {
            "brandNorm": self.brand_norm,
            "caliberNorm": self.caliber_norm,
            "grain": self.grain,
            "roundCount": self.round_count,
            "loadType": self.load_type,
            "shellLength": self.shell_length,
            "titleSignature": self.title_signature,
            "upcNorm": self.upc_norm,
            "brandAliasFrom": self.brand_alias_from,
        }


def title_signature(title: Optional[str]) -> Optional[str]:
    """Token-normalized title; None when nothing tokenizes."""
    tokens = tokenize(title or "")
    return " ".join(tokens) if tokens else None


def coerce_source_kind(value: Optional[str]) -> str:
    """Map anything outside the SourceKind enum onto OTHER."""
    if value in _SOURCE_KINDS:
        return value
    return SourceKind.OTHER.value


class RecordNormalizer:
    """Derive normalized, matchable fields from a SourceRecord.

    A field that cannot be normalized is recorded in missing_fields and left
    as None; it never aborts resolution.
    """

    def normalize(
        self,
        record: SourceRecord,
        brand_aliases: Optional[Mapping[str, str]] = None,
    ) -> NormalizedInput:
        """
        Normalize a source record.

        Args:
            record: Raw source record
            brand_aliases: Active alias_norm -> canonical_norm map

        Returns:
            NormalizedInput with missing_fields populated
        """
        title = (record.title or "").strip()

        brand_norm = normalize_brand(record.brand)
        brand_alias_from = None
        if brand_norm and brand_aliases and brand_norm in brand_aliases:
            brand_alias_from = brand_norm
            brand_norm = brand_aliases[brand_norm]

        caliber_norm = normalize_caliber(record.caliber) or extract_caliber(title)
        shotgun = is_shotgun_caliber(caliber_norm)

        grain = coerce_positive_int(record.grain) or extract_grain(title)
        round_count = coerce_positive_int(record.round_count) or extract_round_count(title)
        load_type = extract_load_type(title, shotgun=shotgun)
        shell_length = extract_shell_length(title) if shotgun else None
        signature = title_signature(title)

        missing: list[str] = []
        if not brand_norm:
            missing.append("brandNorm")
        if not caliber_norm:
            missing.append("caliberNorm")
        if not grain and not shotgun:
            missing.append("grain")
        if not round_count:
            missing.append("packCount")
        if not signature:
            missing.append("titleSignature")
        if not load_type:
            missing.append("loadType")
        if shotgun and not shell_length:
            missing.append("shellLength")

        if missing:
            logger.debug(
                "Normalization gaps for source record %s: %s",
                record.id,
                ", ".join(missing),
            )

        return NormalizedInput(
            source_record_id=record.id,
            source_id=record.source_id,
            source_kind=coerce_source_kind(record.source_kind),
            brand_norm=brand_norm,
            caliber_norm=caliber_norm,
            grain=grain,
            round_count=round_count,
            load_type=load_type,
            shell_length=shell_length,
            title=title,
            title_signature=signature,
            upc_norm=to_canonical_upc(record.upc),
            is_shotgun=shotgun,
            brand_alias_from=brand_alias_from,
            missing_fields=missing,
        )


record_normalizer = RecordNormalizer()
