"""
FastAPI application factory.

* Registers routes for deliveries, drivers, fares, admin and the delivery
  WebSocket.
* Builds the dispatch core and starts / stops the history writer, sweep
  workers and pub/sub relay via lifespan events.
* Maps ``DispatchError`` and malformed requests to ``{"code", "message"}``.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from dispatch.api.middleware import limiter
from dispatch.api.realtime import ConnectionRegistry, LocalPublisher, relay_pubsub
from dispatch.api.realtime import router as realtime_router
from dispatch.api.routes import admin, deliveries, drivers, fares
from dispatch.config import settings
from dispatch.core import DispatchCore, build_core
from dispatch.domain.errors import DependencyUnavailable, DispatchError, ValidationError
from dispatch.infrastructure.database import async_session_factory
from dispatch.infrastructure.location_store import FailoverLocationStore, build_location_store
from dispatch.infrastructure.messaging import Publisher, RedisPublisher
from dispatch.infrastructure.redis_client import close_redis, get_redis
from dispatch.workers import sweeper

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the core on startup unless one was injected; stop workers on shutdown."""
    if getattr(app.state, "core", None) is not None:
        yield
        return

    registry: ConnectionRegistry = app.state.registry
    redis = await get_redis()
    store = await build_location_store(redis)
    publisher: Publisher
    stop_relay = asyncio.Event()
    relay: Optional[asyncio.Task] = None
    if isinstance(store, FailoverLocationStore):
        publisher = RedisPublisher(redis)
        relay = asyncio.create_task(relay_pubsub(redis, registry, stop_relay))
    else:
        publisher = LocalPublisher(registry)
        redis = None

    core = build_core(async_session_factory, store, publisher)
    app.state.core = core
    await core.history.start()
    await sweeper.start_sweepers(core, redis)

    yield

    await sweeper.stop_sweepers()
    await core.deliveries.drain()
    await core.history.stop()
    stop_relay.set()
    if relay is not None:
        await relay
    await close_redis()


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    if isinstance(exc, DependencyUnavailable):
        logger.error("%s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "message": exc.message},
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed bodies share the domain error shape instead of FastAPI's 422."""
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid input')}" if field else "Invalid input"
    return JSONResponse(
        status_code=400,
        content={"code": ValidationError.code, "message": message},
    )


def create_app(
    core: Optional[DispatchCore] = None,
    registry: Optional[ConnectionRegistry] = None,
) -> FastAPI:
    app = FastAPI(
        title="Dispatch Core API",
        description=(
            "Prices deliveries, matches them to nearby drivers, tracks driver "
            "positions and drives each delivery through its lifecycle under "
            "concurrent updates."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.core = core
    app.state.registry = registry or ConnectionRegistry()

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(DispatchError, dispatch_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Routers
    app.include_router(deliveries.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(fares.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(realtime_router)

    return app
