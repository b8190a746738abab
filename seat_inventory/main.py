import asyncio
import uuid
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

from seat_inventory.config import settings
from seat_inventory.db.session import async_session, engine
from seat_inventory.errors import SeatInventoryError
from seat_inventory.logging_setup import TRACE_ID_CTX, setup_logging
from seat_inventory.redis_client import create_redis_client
from seat_inventory.services.auth import TokenVerifier
from seat_inventory.services.availability_cache import RedisCacheBackend
from seat_inventory.services.publisher import RedisPublisher
from seat_inventory.services.seat_map import build_seat_map_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    redis = create_redis_client()
    publisher = RedisPublisher(redis, TokenVerifier())
    service = build_seat_map_service(async_session, RedisCacheBackend(redis), publisher)
    app.state.redis = redis
    app.state.publisher = publisher
    app.state.seat_map_service = service

    stop_event = asyncio.Event()
    reaper_task = None
    if settings.REAPER_IN_PROCESS:
        reaper_task = asyncio.create_task(service.reaper.run_forever(settings.REAPER_INTERVAL_SECONDS, stop_event))
    try:
        yield
    finally:
        stop_event.set()
        if reaper_task is not None:
            await reaper_task
        await redis.aclose()
        await engine.dispose()


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SeatInventoryError)
    async def seat_inventory_error_handler(request: Request, exc: SeatInventoryError):
        return JSONResponse(status_code=exc.status_code, content={"status": False, "message": exc.public_message})


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# initialize logging and Sentry
setup_logging(settings.LOG_LEVEL)
if settings.SENTRY_DSN:
    sentry_sdk.init(dsn=settings.SENTRY_DSN)
    app.add_middleware(SentryAsgiMiddleware)

register_exception_handlers(app)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    TRACE_ID_CTX.set(trace_id)
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.get("/")
async def root():
    return {"app": settings.APP_NAME, "status": "ok"}


@app.get("/metrics")
async def metrics():
    content = generate_latest()
    return Response(content=content, media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready(request: Request):
    # simple readiness: check redis
    redis = getattr(request.app.state, "redis", None)
    if redis is None:
        return Response(status_code=503, content="redis unavailable")
    try:
        await redis.ping()
    except RedisError:
        return Response(status_code=503, content="redis unavailable")
    return {"status": "ready"}
