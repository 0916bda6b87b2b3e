"""
Ping Exporter - Application Factory
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI
from pingexporter.config import settings
from pingexporter.routers import metrics, targets as targets_router
from pingexporter.schemas.target import ResolvedTarget
from pingexporter.services.dispatcher import ProbeDispatcher
from pingexporter.services.metrics import MetricsAggregator
from pingexporter.services.socket_pool import SocketPool

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    targets: List[ResolvedTarget],
    pool: Optional[SocketPool] = None,
    aggregator: Optional[MetricsAggregator] = None,
) -> FastAPI:
    if pool is None:
        pool = SocketPool()
    if aggregator is None:
        aggregator = MetricsAggregator()
    dispatcher = ProbeDispatcher(targets, pool, aggregator)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} with {len(targets)} target(s)")
        dispatcher.start()

        yield

        # Shutdown
        dispatcher.shutdown()
        pool.close()
        logger.info(f"{settings.APP_NAME} shutting down")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )
    app.state.dispatcher = dispatcher
    app.state.aggregator = aggregator

    app.include_router(metrics.router)
    app.include_router(targets_router.router)
    return app
