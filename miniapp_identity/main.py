"""FastAPI application wiring for the identity service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool
from redis import Redis

from .api.envelope import register_exception_handlers
from .api.gatekeeper import RouteGatekeeper
from .api.routes import router as v1_router
from .config import Settings, get_settings
from .domain.service import IdentityService
from .logging_setup import configure_logging
from .repository import AccountRepository
from .security.rate_limiter import CounterStore, FixedWindowRateLimiter, InMemoryCounterStore
from .security.redis_rate_limiter import RedisCounterStore
from .security.tokens import SessionCodec

logger = logging.getLogger(__name__)

settings = get_settings()


def build_counter_store(config: Settings) -> CounterStore:
    """Pick the shared Redis store when configured, else a per-process one."""
    if config.rate_limit_backend == "redis" and config.redis_url:
        return RedisCounterStore(Redis.from_url(config.redis_url))
    if config.rate_limit_backend == "redis":
        logger.warning("RATE_LIMIT_BACKEND=redis without REDIS_URL; using in-memory counters")
    return InMemoryCounterStore()


def wire_state(app: FastAPI, repository: AccountRepository, config: Settings) -> None:
    """Attach the service graph for one repository to ``app.state``."""
    codec = SessionCodec.from_settings(config)
    counter_store = build_counter_store(config)
    app.state.counter_store = counter_store
    app.state.trusted_proxies = config.trusted_proxies
    app.state.login_path = config.login_path
    app.state.rate_limiter = FixedWindowRateLimiter(
        counter_store,
        max_requests=config.rate_limit_requests,
        window_seconds=config.rate_limit_window_seconds,
    )
    app.state.identity_service = IdentityService(
        repository,
        codec,
        bot_token=config.bot_token,
        auth_max_age_seconds=config.auth_max_age_seconds,
        counter_store=counter_store,
    )
    app.state.gatekeeper = RouteGatekeeper(
        codec,
        repository,
        cookie_name=config.session_cookie_name,
        cookie_domain=config.session_cookie_domain,
        local_hosts=config.local_hosts,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services) for the app lifecycle."""
    configure_logging(settings.log_level)
    if not settings.bot_token:
        logger.warning("BOT_TOKEN is not set; every platform login will be rejected")
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    app.state.pool = pool
    wire_state(app, AccountRepository(pool), settings)
    try:
        yield
    finally:
        pool.close()
        pool.wait_close()


def create_app(*, with_lifespan: bool = True) -> FastAPI:
    """Build the application; tests pass ``with_lifespan=False`` and wire state themselves."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan if with_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=600,
    )
    register_exception_handlers(app)

    @app.get("/healthz", tags=["health"])
    def healthz() -> dict[str, str]:
        """Return a minimal readiness indicator used by orchestration systems."""
        return {"status": "ok"}

    @app.get("/metrics", tags=["health"])
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(v1_router)
    return app


app = create_app()


def run() -> None:
    """Serve the application with uvicorn on the configured address."""
    import uvicorn

    uvicorn.run(app, host=settings.http_host, port=settings.http_port, log_config=None)


if __name__ == "__main__":
    run()
