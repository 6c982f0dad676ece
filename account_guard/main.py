"""FastAPI application wiring for the account guard service."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool
import redis

from .api import routes
from .api.routes import router as v1_router
from .config import get_settings
from .domain.service import AccountGuardService
from .repository import InMemoryAccountStore, PostgresAccountStore, RedisAccountStore

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the configured account store and the guard service for the app lifecycle."""
    pool: ConnectionPool | None = None
    if settings.store_backend == "postgres":
        pool = ConnectionPool(settings.database_url, open=False)
        pool.open()
        store = PostgresAccountStore(pool)
        store.ensure_schema()
        app.state.pool = pool
    elif settings.store_backend == "redis":
        store = RedisAccountStore(redis.from_url(settings.redis_url))
    else:
        store = InMemoryAccountStore()
    logger.info("account store backend: %s", settings.store_backend)

    app.state.guard_service = AccountGuardService(
        store,
        settings=settings,
        throttle=routes.rate_limiter,
    )
    try:
        yield
    finally:
        if pool is not None:
            pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


app.include_router(v1_router)


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
