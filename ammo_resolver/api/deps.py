"""FastAPI dependencies."""

from fastapi import Request

from ammo_resolver.metrics import ResolverMetrics


def get_store(request: Request):
    """Dependency for the resolver store bound to this app."""
    return request.app.state.store


def get_metrics(request: Request) -> ResolverMetrics:
    """Dependency for the resolver metrics registry bound to this app."""
    return request.app.state.metrics
