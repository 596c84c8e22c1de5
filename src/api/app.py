"""
FastAPI application factory.

* Registers routes for moves, drivers, admin and the payment webhook.
* Builds the dispatch engine and starts / stops the reconciliation
  worker via lifespan events (unless an engine is injected).
* Maps every ``DispatchError`` onto ``{"detail", "code"}`` with its status.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api.middleware import limiter
from src.api.routes import admin, drivers, moves, payments
from src.config import Settings, settings
from src.domain.errors import DispatchError
from src.domain.pricing import PricingEngine
from src.infrastructure.database import build_engine, build_session_factory
from src.infrastructure.geo import H3DriverLocator
from src.infrastructure.memory_store import InMemoryDispatchStore
from src.infrastructure.notifications import RedisNotificationChannel
from src.infrastructure.payments import HttpPaymentGateway
from src.infrastructure.redis_client import create_redis
from src.infrastructure.repositories import SqlDispatchStore
from src.services.dispatch import DispatchEngine
from src.workers import reconciler

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def build_dispatch_engine(config: Settings, redis) -> tuple[DispatchEngine, list]:
    """Wire the engine from settings.  Returns it with the resources to close."""
    closers = []
    if config.storage_backend == "memory":
        logger.warning("Using the in-memory store; data is lost on restart")
        store = InMemoryDispatchStore()
    else:
        db_engine = build_engine(config.database_url)
        store = SqlDispatchStore(build_session_factory(db_engine))
        closers.append(db_engine.dispose)

    notifier = RedisNotificationChannel(redis, config.notification_channel_prefix)
    gateway = HttpPaymentGateway(config.payment_service_url)
    closers.extend([notifier.flush, gateway.aclose])

    engine = DispatchEngine(
        store=store,
        geo=H3DriverLocator(store, config.h3_resolution),
        pricing=PricingEngine(average_speed_kmh=config.average_speed_kmh),
        notifier=notifier,
        payments=gateway,
        settings=config,
    )
    return engine, closers


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine (if not injected) and run the reconciler."""
    closers = []
    redis = None
    if app.state.engine is None:
        redis = create_redis()
        app.state.engine, closers = build_dispatch_engine(settings, redis)
        logger.info("Dispatch engine ready (storage=%s)", settings.storage_backend)
    if settings.reconciliation_enabled:
        await reconciler.start_reconciler(app.state.engine, redis)
    yield
    if settings.reconciliation_enabled:
        await reconciler.stop_reconciler()
    await app.state.engine.shutdown()
    for close in closers:
        await close()
    if redis is not None:
        await redis.aclose()


async def _dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def create_app(engine: Optional[DispatchEngine] = None) -> FastAPI:
    app = FastAPI(
        title="Move Dispatch API",
        description=(
            "Matches delivery moves to nearby drivers one at a time with "
            "bounded response windows, and drives each move from request "
            "to delivery and payment."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(DispatchError, _dispatch_error_handler)

    # Routers
    app.include_router(moves.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(payments.router, prefix="/api/v1")

    return app
