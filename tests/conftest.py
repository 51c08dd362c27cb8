"""Shared fixtures for resolver tests."""

import itertools

import pytest

from ammo_resolver.config import Settings
from ammo_resolver.db.memory_store import InMemoryResolverStore
from ammo_resolver.db.models import CanonicalProduct, SourceRecord
from ammo_resolver.metrics import ResolverMetrics
from ammo_resolver.resolver.core import ProductResolver
from ammo_resolver.resolver.scoring import WeightedExactMatchStrategy


@pytest.fixture
def resolver_settings():
    return Settings(
        fuzzy_match_threshold=0.85,
        fuzzy_candidate_limit=200,
        worker_batch_size=10,
        worker_max_attempts=3,
        stale_processing_timeout_seconds=600,
    )


@pytest.fixture
def store():
    return InMemoryResolverStore()


@pytest.fixture
def metrics():
    return ResolverMetrics()


@pytest.fixture
def resolver(store, metrics, resolver_settings):
    return ProductResolver(
        store,
        strategy=WeightedExactMatchStrategy(),
        metrics=metrics,
        settings=resolver_settings,
    )


@pytest.fixture
def make_record():
    """Factory for unsaved SourceRecords with sensible defaults."""
    counter = itertools.count(1)

    def _make(**overrides) -> SourceRecord:
        n = next(counter)
        fields = {
            "source_id": "retailer-a",
            "source_kind": "DIRECT",
            "brand": "Federal",
            "title": "Federal American Eagle 9mm 115gr FMJ",
            "caliber": "9mm",
            "grain": 115,
            "round_count": 50,
            "raw_payload": {"sku": f"sku-{n}"},
        }
        fields.update(overrides)
        return SourceRecord(**fields)

    return _make


@pytest.fixture
def make_product():
    """Factory for unsaved CanonicalProducts."""

    def _make(**overrides) -> CanonicalProduct:
        fields = {
            "brand_norm": "federal",
            "caliber_norm": "9mm",
            "grain": 115,
            "round_count": 50,
            "load_type": "FMJ",
            "name": "Federal American Eagle 9mm 115gr FMJ",
        }
        fields.update(overrides)
        return CanonicalProduct(**fields)

    return _make
