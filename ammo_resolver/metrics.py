"""Prometheus metrics for the product resolver.

Each ResolverMetrics owns its own CollectorRegistry, so a process (or a test)
can build a fresh one and reset it without touching the global default
registry. Label values are closed enums; anything outside them is coerced to
UNKNOWN (or "other" for missing-field labels). Never pass per-record
identifiers as labels.
"""

import math
from dataclasses import dataclass, field
from typing import Iterable, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from ammo_resolver.db.models import LinkageStatus, MatchPath, ReasonCode, SourceKind
from ammo_resolver.normalize.processor import MISSING_FIELD_LABELS

LATENCY_BUCKETS_MS = [10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000]

UNKNOWN_LABEL = "UNKNOWN"
OTHER_FIELD_LABEL = "other"

MATCH_PATH_OUTCOMES = ("MATCHED", "CREATED", "UNMATCHED", "FALLTHROUGH")

_SOURCE_KIND_LABELS = frozenset(kind.value for kind in SourceKind)
_STATUS_LABELS = frozenset(status.value for status in LinkageStatus)
_REASON_CODE_LABELS = frozenset(code.value for code in ReasonCode)
_MATCH_PATH_LABELS = frozenset(path.value for path in MatchPath)
_OUTCOME_LABELS = frozenset(MATCH_PATH_OUTCOMES)
_MISSING_FIELD_LABELS = frozenset(MISSING_FIELD_LABELS)


def _closed_label(value, allowed: frozenset, fallback: str = UNKNOWN_LABEL) -> str:
    value = getattr(value, "value", value)
    if value in allowed:
        return value
    return fallback


@dataclass
class LatencySnapshot:
    """Cumulative latency histogram (upper bound in ms -> count)."""

    count: int = 0
    sum: float = 0.0
    buckets: dict[float, int] = field(default_factory=dict)


@dataclass
class MetricsSnapshot:
    """Point-in-time copy of every resolver metric."""

    requests: dict[str, int] = field(default_factory=dict)
    decisions: dict[str, dict[str, int]] = field(default_factory=dict)
    failures: dict[str, dict[str, int]] = field(default_factory=dict)
    latency: LatencySnapshot = field(default_factory=LatencySnapshot)
    match_path: dict[str, dict[str, int]] = field(default_factory=dict)
    missing_fields: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "requests": dict(self.requests),
            "decisions": {k: dict(v) for k, v in self.decisions.items()},
            "failures": {k: dict(v) for k, v in self.failures.items()},
            "latency": {
                "count": self.latency.count,
                "sum": self.latency.sum,
                "buckets": {
                    ("+Inf" if math.isinf(b) else str(b)): c
                    for b, c in self.latency.buckets.items()
                },
            },
            "matchPath": {k: dict(v) for k, v in self.match_path.items()},
            "missingFields": dict(self.missing_fields),
        }


class ResolverMetrics:
    """Counters and histograms over resolver decisions."""

    def __init__(self):
        self._build()

    def _build(self) -> None:
        self.registry = CollectorRegistry()

        self.requests_total = Counter(
            "resolver_requests_total",
            "Total resolver job requests",
            ["source_kind"],
            registry=self.registry,
        )
        self.decisions_total = Counter(
            "resolver_decisions_total",
            "Total resolver decisions by outcome",
            ["source_kind", "status"],
            registry=self.registry,
        )
        self.failure_total = Counter(
            "resolver_failure_total",
            "Total resolver failures by reason",
            ["source_kind", "reason_code"],
            registry=self.registry,
        )
        self.latency_ms = Histogram(
            "resolver_latency_ms",
            "Resolver job latency in milliseconds",
            buckets=LATENCY_BUCKETS_MS,
            registry=self.registry,
        )
        self.match_path_total = Counter(
            "resolver_match_path_total",
            "Total resolver resolutions by match path",
            ["path", "outcome"],
            registry=self.registry,
        )
        self.missing_field_total = Counter(
            "resolver_missing_field_total",
            "Total missing fields during normalization",
            ["field"],
            registry=self.registry,
        )

    def reset(self) -> None:
        """Drop every series by rebuilding a fresh registry."""
        self._build()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_request(self, source_kind) -> None:
        """Call at job start."""
        self.requests_total.labels(
            source_kind=_closed_label(source_kind, _SOURCE_KIND_LABELS)
        ).inc()

    def record_decision(self, source_kind, status) -> None:
        self.decisions_total.labels(
            source_kind=_closed_label(source_kind, _SOURCE_KIND_LABELS),
            status=_closed_label(status, _STATUS_LABELS),
        ).inc()

    def record_failure(self, source_kind, reason_code) -> None:
        """Only for ERROR decisions."""
        self.failure_total.labels(
            source_kind=_closed_label(source_kind, _SOURCE_KIND_LABELS),
            reason_code=_closed_label(reason_code, _REASON_CODE_LABELS),
        ).inc()

    def record_latency(self, duration_ms: float) -> None:
        self.latency_ms.observe(max(0.0, duration_ms))

    def record_match_path(self, path, outcome) -> None:
        self.match_path_total.labels(
            path=_closed_label(path, _MATCH_PATH_LABELS),
            outcome=_closed_label(outcome, _OUTCOME_LABELS),
        ).inc()

    def record_missing_fields(self, fields: Iterable[str]) -> None:
        for name in fields:
            self.missing_field_total.labels(
                field=_closed_label(name, _MISSING_FIELD_LABELS, OTHER_FIELD_LABEL)
            ).inc()

    def record_resolution(
        self,
        source_kind,
        status,
        duration_ms: float,
        reason_code: Optional[str] = None,
    ) -> None:
        """Record the exit metrics of one resolver job: decision, failure, latency."""
        self.record_decision(source_kind, status)
        if _closed_label(status, _STATUS_LABELS) == LinkageStatus.ERROR.value:
            self.record_failure(source_kind, reason_code or ReasonCode.SYSTEM_ERROR.value)
        self.record_latency(duration_ms)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def snapshot(self) -> MetricsSnapshot:
        """Read every series out of the registry."""
        snap = MetricsSnapshot()

        for family in self.registry.collect():
            for sample in family.samples:
                name, labels, value = sample.name, sample.labels, sample.value

                if name == "resolver_requests_total":
                    snap.requests[labels["source_kind"]] = int(value)
                elif name == "resolver_decisions_total":
                    snap.decisions.setdefault(labels["source_kind"], {})[labels["status"]] = int(value)
                elif name == "resolver_failure_total":
                    snap.failures.setdefault(labels["source_kind"], {})[
                        labels["reason_code"]
                    ] = int(value)
                elif name == "resolver_match_path_total":
                    snap.match_path.setdefault(labels["path"], {})[labels["outcome"]] = int(value)
                elif name == "resolver_missing_field_total":
                    snap.missing_fields[labels["field"]] = int(value)
                elif name == "resolver_latency_ms_bucket":
                    snap.latency.buckets[float(labels["le"])] = int(value)
                elif name == "resolver_latency_ms_count":
                    snap.latency.count = int(value)
                elif name == "resolver_latency_ms_sum":
                    snap.latency.sum = value

        return snap

    def render_prometheus(self) -> str:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry).decode("utf-8")

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    def latency_percentile(self, percentile: float) -> float:
        """
        Approximate a latency percentile from bucket boundaries.

        Args:
            percentile: 0-100

        Returns:
            Upper bound (ms) of the first bucket holding the target rank,
            the largest finite bound when it only falls in +Inf, or 0 with
            no observations
        """
        latency = self.snapshot().latency
        if latency.count == 0:
            return 0.0

        target = max(1, math.ceil(latency.count * (percentile / 100)))
        for bound in sorted(latency.buckets):
            if math.isinf(bound):
                break
            if latency.buckets[bound] >= target:
                return bound

        return float(LATENCY_BUCKETS_MS[-1])

    def failure_rate(self) -> float:
        total = errors = 0
        for statuses in self.snapshot().decisions.values():
            for status, count in statuses.items():
                total += count
                if status == LinkageStatus.ERROR.value:
                    errors += count
        return errors / total if total else 0.0

    def match_rate(self) -> float:
        """(MATCHED + CREATED) / all decisions."""
        total = resolved = 0
        for statuses in self.snapshot().decisions.values():
            for status, count in statuses.items():
                total += count
                if status in (LinkageStatus.MATCHED.value, LinkageStatus.CREATED.value):
                    resolved += count
        return resolved / total if total else 0.0

    def identity_key_rate(self) -> float:
        """Identity-key resolutions / (identity-key + fuzzy resolutions)."""
        identity_key = fuzzy = 0
        for path, outcomes in self.snapshot().match_path.items():
            if path in (MatchPath.IDENTITY_KEY.value, MatchPath.IDENTITY_KEY_SHOTGUN.value):
                identity_key += sum(
                    count for outcome, count in outcomes.items() if outcome != "FALLTHROUGH"
                )
            elif path == MatchPath.FUZZY.value:
                fuzzy += sum(outcomes.values())
        total = identity_key + fuzzy
        return identity_key / total if total else 0.0

    def top_missing_fields(self, limit: int = 10) -> list[tuple[str, int]]:
        """Most frequently missing fields, highest count first."""
        items = sorted(
            self.snapshot().missing_fields.items(),
            key=lambda item: (-item[1], item[0]),
        )
        return items[:limit]
