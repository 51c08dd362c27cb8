"""Tiered product resolver: one source record in, one linkage out."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from ammo_resolver.config import Settings, settings as default_settings
from ammo_resolver.db.models import (
    CanonicalProduct,
    Linkage,
    LinkageStatus,
    MatchPath,
    ReasonCode,
    SourceRecord,
)
from ammo_resolver.errors import (
    IdentityKeyConflict,
    PersistenceFailure,
    ResolverError,
    ScoringFailure,
)
from ammo_resolver.metrics import ResolverMetrics
from ammo_resolver.normalize.processor import (
    NormalizedInput,
    RecordNormalizer,
    coerce_source_kind,
    record_normalizer,
)
from ammo_resolver.resolver.identity_key import IdentityKey, build_identity_key
from ammo_resolver.resolver.scoring import ScoringResult, ScoringStrategy, get_strategy

logger = logging.getLogger(__name__)

# Bump whenever normalization, keying or scoring changes decisions.
# Existing linkages keep the version they were written with.
RESOLVER_VERSION = "1.2.0"

# Identity-key lookups fetch two rows: one is a hit, two is ambiguity
IDENTITY_KEY_LOOKUP_LIMIT = 2

# Scores are compared after rounding so float noise never flips a tie
SCORE_PRECISION = 9


@dataclass
class ResolutionResult:
    """Terminal outcome of resolving one source record."""

    source_record_id: int
    status: str
    match_path: str
    canonical_product_id: Optional[int] = None
    confidence: float = 0.0
    reason_code: Optional[str] = None
    evidence: dict[str, Any] = field(default_factory=dict)
    normalized: Optional[NormalizedInput] = None
    linkage: Optional[Linkage] = None
    duration_ms: float = 0.0

    @property
    def is_error(self) -> bool:
        return self.status == LinkageStatus.ERROR.value


@dataclass
class _Decision:
    status: str
    match_path: str
    canonical_product_id: Optional[int] = None
    confidence: float = 0.0
    reason_code: Optional[str] = None


@dataclass
class _ScoredCandidate:
    candidate: CanonicalProduct
    result: ScoringResult

    @property
    def sort_key(self) -> tuple[float, int]:
        # Highest total first, then lowest candidate id
        return (-round(self.result.total, SCORE_PRECISION), self.candidate.id)


class ProductResolver:
    """
    Resolve source records to canonical products.

    Tiers, in order:
    1. Identity key: exact bucket lookup; exactly one hit matches
    2. UPC: only for upc-trusted sources with a valid barcode
    3. Fuzzy: score the caliber bucket with the scoring strategy; accept the
       best candidate at or above the threshold, otherwise create a product

    Every call writes exactly one linkage row. Store and scoring failures end
    the record with an ERROR linkage carrying a bounded reason code.
    """

    def __init__(
        self,
        store,
        strategy: Optional[ScoringStrategy] = None,
        metrics: Optional[ResolverMetrics] = None,
        settings: Optional[Settings] = None,
        normalizer: Optional[RecordNormalizer] = None,
        resolver_version: str = RESOLVER_VERSION,
    ):
        settings = settings or default_settings
        self.store = store
        self.strategy = strategy or get_strategy(settings.scoring_strategy)
        self.metrics = metrics or ResolverMetrics()
        self.normalizer = normalizer or record_normalizer
        self.resolver_version = resolver_version
        self.match_threshold = settings.fuzzy_match_threshold
        self.candidate_limit = settings.fuzzy_candidate_limit

    async def resolve(self, record: SourceRecord) -> ResolutionResult:
        """
        Resolve one source record and append its linkage.

        Args:
            record: Claimed source record

        Returns:
            ResolutionResult with the written linkage

        Raises:
            PersistenceFailure: When even the ERROR linkage cannot be written
        """
        started = time.perf_counter()
        source_kind = coerce_source_kind(record.source_kind)
        self.metrics.record_request(source_kind)

        normalized: Optional[NormalizedInput] = None
        evidence: dict[str, Any] = {
            "resolverVersion": self.resolver_version,
            "strategy": {"name": self.strategy.name, "version": self.strategy.version},
        }

        try:
            aliases = await self.store.get_active_brand_aliases()
            normalized = self.normalizer.normalize(record, aliases)
            evidence["inputs"] = normalized.evidence()
            evidence["missingFields"] = list(normalized.missing_fields)

            decision = await self._decide(normalized, evidence)
            linkage = await self._append_linkage(record.id, decision, evidence)

        except Exception as e:
            reason_code = self._reason_code(e)
            if isinstance(e, ResolverError):
                logger.warning(f"Resolution failed for source record {record.id} ({reason_code}): {e}")
            else:
                logger.exception(f"Unexpected error resolving source record {record.id}")

            decision = _Decision(
                status=LinkageStatus.ERROR.value,
                match_path=MatchPath.NONE.value,
                reason_code=reason_code,
            )
            evidence["error"] = {"reasonCode": reason_code, "message": str(e)[:500]}

            try:
                linkage = await self._append_linkage(record.id, decision, evidence)
            except PersistenceFailure:
                self._record_exit(source_kind, decision, normalized, started)
                logger.error(f"Could not write ERROR linkage for source record {record.id}")
                raise

        duration_ms = self._record_exit(source_kind, decision, normalized, started)

        return ResolutionResult(
            source_record_id=record.id,
            status=decision.status,
            match_path=decision.match_path,
            canonical_product_id=decision.canonical_product_id,
            confidence=decision.confidence,
            reason_code=decision.reason_code,
            evidence=evidence,
            normalized=normalized,
            linkage=linkage,
            duration_ms=duration_ms,
        )

    @staticmethod
    def _reason_code(error: Exception) -> str:
        if isinstance(error, ResolverError):
            return error.reason_code
        return ReasonCode.SYSTEM_ERROR.value

    def _record_exit(
        self,
        source_kind: str,
        decision: _Decision,
        normalized: Optional[NormalizedInput],
        started: float,
    ) -> float:
        duration_ms = (time.perf_counter() - started) * 1000
        self.metrics.record_resolution(
            source_kind,
            decision.status,
            duration_ms,
            reason_code=decision.reason_code,
        )
        if normalized is not None:
            self.metrics.record_missing_fields(normalized.missing_fields)
        return duration_ms

    async def _append_linkage(self, source_record_id: int, decision: _Decision, evidence: dict) -> Linkage:
        linkage = Linkage(
            source_record_id=source_record_id,
            canonical_product_id=decision.canonical_product_id,
            status=decision.status,
            reason_code=decision.reason_code,
            match_path=decision.match_path,
            confidence=decision.confidence,
            resolver_version=self.resolver_version,
            evidence=evidence,
        )
        return await self.store.append_linkage(linkage)

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    async def _decide(self, normalized: NormalizedInput, evidence: dict) -> _Decision:
        key = build_identity_key(normalized)
        evidence["identityKey"] = key.render() if key else None

        if key is not None:
            decision = await self._identity_key_lookup(normalized, key, evidence)
            if decision:
                return decision

        decision = await self._upc_lookup(normalized, evidence)
        if decision:
            return decision

        return await self._fuzzy(normalized, key, evidence)

    async def _identity_key_lookup(
        self,
        normalized: NormalizedInput,
        key: IdentityKey,
        evidence: dict,
    ) -> Optional[_Decision]:
        path = MatchPath.IDENTITY_KEY_SHOTGUN.value if key.shotgun else MatchPath.IDENTITY_KEY.value
        rendered = key.render()

        hits = await self.store.find_by_identity_key(rendered, limit=IDENTITY_KEY_LOOKUP_LIMIT)

        if len(hits) == 1:
            self.metrics.record_match_path(path, "MATCHED")
            return _Decision(
                status=LinkageStatus.MATCHED.value,
                match_path=path,
                canonical_product_id=hits[0].id,
                confidence=1.0,
            )

        if len(hits) > 1:
            # Data-quality signal: never guess between products sharing a key
            logger.warning(
                f"Ambiguous identity key {rendered} for source record "
                f"{normalized.source_record_id}: products {[hit.id for hit in hits]}"
            )
            evidence["ambiguousIdentityKey"] = {
                "identityKey": rendered,
                "canonicalProductIds": [hit.id for hit in hits],
            }

        self.metrics.record_match_path(path, "FALLTHROUGH")
        return None

    async def _upc_lookup(self, normalized: NormalizedInput, evidence: dict) -> Optional[_Decision]:
        if not normalized.upc_norm:
            return None

        trusted = await self.store.is_upc_trusted(normalized.source_id)
        evidence["upc"] = {"upcNorm": normalized.upc_norm, "trusted": trusted}
        if not trusted:
            return None

        product = await self.store.find_by_upc(normalized.upc_norm)
        if product is None:
            self.metrics.record_match_path(MatchPath.UPC.value, "FALLTHROUGH")
            return None

        self.metrics.record_match_path(MatchPath.UPC.value, "MATCHED")
        return _Decision(
            status=LinkageStatus.MATCHED.value,
            match_path=MatchPath.UPC.value,
            canonical_product_id=product.id,
            confidence=1.0,
        )

    async def _fuzzy(
        self,
        normalized: NormalizedInput,
        key: Optional[IdentityKey],
        evidence: dict,
    ) -> _Decision:
        if not normalized.brand_norm or not normalized.caliber_norm:
            # Nothing sensible to score or to create a product from
            self.metrics.record_match_path(MatchPath.NONE.value, "UNMATCHED")
            return _Decision(status=LinkageStatus.UNMATCHED.value, match_path=MatchPath.NONE.value)

        candidates = await self.store.fetch_candidates(normalized.caliber_norm, self.candidate_limit)
        best = self._score_candidates(normalized, candidates)

        fuzzy_evidence: dict[str, Any] = {
            "candidateCount": len(candidates),
            "threshold": self.match_threshold,
        }
        evidence["fuzzy"] = fuzzy_evidence

        if best is not None:
            best_total = round(best.result.total, SCORE_PRECISION)
            fuzzy_evidence.update(
                bestCandidateId=best.candidate.id,
                total=best_total,
                componentScores=best.result.component_scores,
                matchDetails=best.result.match_details,
            )
            if best_total >= self.match_threshold:
                self.metrics.record_match_path(MatchPath.FUZZY.value, "MATCHED")
                return _Decision(
                    status=LinkageStatus.MATCHED.value,
                    match_path=MatchPath.FUZZY.value,
                    canonical_product_id=best.candidate.id,
                    confidence=best_total,
                )

        path = MatchPath.FUZZY.value if candidates else MatchPath.NONE.value
        try:
            product = await self.store.create_canonical_product(
                self._new_product(normalized, key)
            )
        except IdentityKeyConflict:
            # Another worker created this key after our lookup; link to its product
            return await self._adopt_existing_key(normalized, key, evidence)

        logger.info(
            f"Created canonical product {product.id} from source record "
            f"{normalized.source_record_id} via {path}"
        )
        self.metrics.record_match_path(path, "CREATED")
        return _Decision(
            status=LinkageStatus.CREATED.value,
            match_path=path,
            canonical_product_id=product.id,
            confidence=1.0,
        )

    async def _adopt_existing_key(
        self,
        normalized: NormalizedInput,
        key: IdentityKey,
        evidence: dict,
    ) -> _Decision:
        rendered = key.render()
        hits = await self.store.find_by_identity_key(rendered, limit=IDENTITY_KEY_LOOKUP_LIMIT)
        if len(hits) != 1:
            raise PersistenceFailure(
                f"Identity key {rendered} conflicted on create but resolves to {len(hits)} products"
            )

        logger.info(
            f"Identity key {rendered} was created concurrently; source record "
            f"{normalized.source_record_id} linked to product {hits[0].id}"
        )
        evidence["identityKeyConflict"] = {
            "identityKey": rendered,
            "canonicalProductId": hits[0].id,
        }
        path = MatchPath.IDENTITY_KEY_SHOTGUN.value if key.shotgun else MatchPath.IDENTITY_KEY.value
        self.metrics.record_match_path(path, "MATCHED")
        return _Decision(
            status=LinkageStatus.MATCHED.value,
            match_path=path,
            canonical_product_id=hits[0].id,
            confidence=1.0,
        )

    def _score_candidates(
        self,
        normalized: NormalizedInput,
        candidates: list[CanonicalProduct],
    ) -> Optional[_ScoredCandidate]:
        if not candidates:
            return None

        try:
            prepared = self.strategy.precompute(normalized)
            scored = [
                _ScoredCandidate(candidate, self.strategy.compute(prepared, candidate))
                for candidate in candidates
            ]
        except Exception as e:
            raise ScoringFailure(f"{self.strategy.name} failed: {e}") from e

        return min(scored, key=lambda item: item.sort_key)

    def _new_product(self, normalized: NormalizedInput, key: Optional[IdentityKey]) -> CanonicalProduct:
        name = normalized.title or " ".join(
            part
            for part in (
                normalized.brand_norm,
                normalized.caliber_norm,
                f"{normalized.grain}gr" if normalized.grain else None,
                f"{normalized.round_count}rd" if normalized.round_count else None,
            )
            if part
        )
        return CanonicalProduct(
            brand_norm=normalized.brand_norm,
            caliber_norm=normalized.caliber_norm,
            grain=normalized.grain,
            round_count=normalized.round_count,
            load_type=normalized.load_type,
            shell_length=normalized.shell_length,
            identity_key=key.render() if key else None,
            upc_norm=normalized.upc_norm,
            name=name,
            specs={"createdFromSourceRecordId": normalized.source_record_id},
            created_by_resolver_version=self.resolver_version,
        )
