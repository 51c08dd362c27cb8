"""Main application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST
from prometheus_fastapi_instrumentator import Instrumentator

from ammo_resolver.api.deps import get_metrics
from ammo_resolver.api.routes import linkages
from ammo_resolver.config import settings
from ammo_resolver.db.models import Base
from ammo_resolver.logging_config import setup_logging
from ammo_resolver.metrics import ResolverMetrics
from ammo_resolver.resolver.core import RESOLVER_VERSION, ProductResolver
from ammo_resolver.resolver.scoring import get_strategy
from ammo_resolver.worker.resolver_worker import ResolverWorker
from ammo_resolver.worker.sweeper import StaleRecordSweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start workers and the sweeper; stop them on shutdown."""
    setup_logging()
    logger.info(f"Starting ammo resolver {RESOLVER_VERSION}...")

    if app.state.create_tables:
        from ammo_resolver.db.session import engine

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    resolver = ProductResolver(
        app.state.store,
        strategy=get_strategy(settings.scoring_strategy),
        metrics=app.state.metrics,
        settings=settings,
    )
    workers = [
        ResolverWorker(app.state.store, resolver, worker_id=f"worker-{index}")
        for index in range(settings.worker_count)
    ]
    tasks = [asyncio.create_task(worker.run_forever()) for worker in workers]
    logger.info(f"Started {len(workers)} resolver workers")

    sweeper = StaleRecordSweeper(app.state.store)
    sweeper.start()

    yield

    logger.info("Shutting down...")
    sweeper.stop()
    for worker in workers:
        worker.stop()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("Shutdown complete")


def create_app(
    store=None,
    metrics: Optional[ResolverMetrics] = None,
    run_workers: bool = True,
    instrument: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        store: Resolver store (defaults to SqlResolverStore over the configured database)
        metrics: Resolver metrics registry (defaults to a fresh one)
        run_workers: Start workers and the sweeper in the lifespan
        instrument: Expose HTTP request metrics on /metrics
    """
    create_tables = store is None
    if store is None:
        from ammo_resolver.db.repository import SqlResolverStore

        store = SqlResolverStore()

    app = FastAPI(
        title="Ammo Resolver",
        description="Link retail product records to canonical ammunition products",
        version=RESOLVER_VERSION,
        lifespan=lifespan if run_workers else None,
    )
    app.state.store = store
    app.state.metrics = metrics or ResolverMetrics()
    app.state.create_tables = create_tables

    if instrument:
        instrumentator = Instrumentator(
            should_group_status_codes=True,
            should_ignore_untemplated=True,
            excluded_handlers=["/metrics", "/metrics/resolver", "/health"],
        )
        instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

    app.include_router(linkages.router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "resolver_version": RESOLVER_VERSION}

    @app.get("/metrics/resolver", tags=["monitoring"])
    async def resolver_metrics(metrics: ResolverMetrics = Depends(get_metrics)):
        """Resolver decision metrics in Prometheus text format."""
        return Response(content=metrics.render_prometheus(), media_type=CONTENT_TYPE_LATEST)

    return app


if __name__ == "__main__":
    uvicorn.run(
        "ammo_resolver.main:create_app",
        factory=True,
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
