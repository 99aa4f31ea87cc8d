"""FastAPI application factory for the Authgate service."""
from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ..db.base import create_engine, dispose_engine
from .bruteforce import BruteForceProtector, RateLimiter
from .config import Settings, settings as default_settings
from .email import EmailDispatcher
from .google import GoogleOAuthClient
from .logging import bind_contextvars, clear_contextvars, get_logger, setup_logging
from .routes import auth, email_otp, oauth, system, two_factor, webauthn
from .storage import build_cache

setup_logging()

logger = get_logger("authgate.http")


@asynccontextmanager
async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via integration tests
    """Initialise and tear down shared application resources."""

    config: Settings = app.state.settings
    create_engine(config.database_url, echo=config.storage.sqlalchemy_echo)
    try:
        yield
    finally:
        await app.state.cache.close()
        await dispose_engine()


def _install_services(app: FastAPI, config: Settings) -> None:
    cache = build_cache(config.redis_url)
    app.state.settings = config
    app.state.cache = cache
    app.state.email_dispatcher = EmailDispatcher(config.email, config.auth, capture=config.is_dev)
    app.state.bruteforce = BruteForceProtector(
        cache=cache,
        max_attempts=config.auth.login_rate_limit_attempts,
        window_seconds=config.auth.login_rate_limit_window_seconds,
        namespace=config.auth.login_rate_limit_namespace,
    )
    app.state.rate_limiter = RateLimiter(
        cache=cache,
        namespace=config.auth.request_rate_limit_namespace,
        enabled=config.auth.request_rate_limit_enabled,
    )
    app.state.google_client = GoogleOAuthClient(config.google, cache=cache)


def create_app(*, settings: Settings | None = None, api_prefix: str | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Parameters
    ----------
    settings:
        Configuration to run with. Defaults to the module level settings loaded
        from the environment.
    api_prefix:
        Optional path prefix under which the API routers should be mounted. When
        ``None`` the routers are mounted at the application root.
    """

    config = settings or default_settings
    app = FastAPI(title="Authgate", version="1.0", lifespan=_lifespan)
    _install_services(app, config)

    if config.is_dev:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(config.auth.allowed_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        clear_contextvars()
        bind_contextvars(request_id=request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed", method=request.method, path=request.url.path)
            raise
        finally:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["x-request-id"] = request_id
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        return response

    router_prefix = api_prefix.rstrip("/") if api_prefix else ""
    if router_prefix and not router_prefix.startswith("/"):
        router_prefix = f"/{router_prefix}"

    for module in (auth, email_otp, two_factor, oauth, webauthn, system):
        app.include_router(module.router, prefix=router_prefix)

    return app


app = create_app(api_prefix="/api")
