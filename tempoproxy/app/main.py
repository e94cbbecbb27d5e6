import traceback
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tempoproxy.app.api.chat import router as chat_router
from tempoproxy.app.api.stats import router as stats_router
from tempoproxy.app.core.config import Settings, settings as default_settings
from tempoproxy.app.core.http_client import init_http_client
from tempoproxy.app.core.logging import get_logger, setup_logging
from tempoproxy.app.exceptions import GatewayException
from tempoproxy.app.middleware.rate_limit import RateLimitMiddleware, SlidingWindowRateLimiter
from tempoproxy.app.middleware.request_id import RequestIdMiddleware
from tempoproxy.app.providers.retry import RetryPolicy
from tempoproxy.app.providers.tempo import TempoProvider
from tempoproxy.app.services.request_queue import RequestQueue
from tempoproxy.app.services.session import (
    ClerkSessionFetcher,
    SessionCredentialCache,
    parse_client_token,
)
from tempoproxy.app.services.stats import StatsCollector


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    The control plane (admission queue, rate limiter, session cache and
    statistics) is built here and stored on ``app.state``, so every app
    instance owns its own state.

    Args:
        settings: Settings to use; defaults to the environment-loaded ones

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or default_settings

    setup_logging(settings)
    logger = get_logger(__name__)

    retry_policy = RetryPolicy(
        max_retries=settings.retry_max_retries,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    )
    fetcher = ClerkSessionFetcher(
        client_token=settings.tempo_client_token,
        url=settings.clerk_client_url,
        origin=settings.clerk_origin,
    )
    session_cache = SessionCredentialCache(
        fetch=fetcher.fetch,
        extract_token=fetcher.extract_session_id,
        retry_policy=retry_policy,
        cache_duration_ms=settings.session_cache_duration,
    )
    rate_limiter = SlidingWindowRateLimiter(
        enabled=settings.rate_limit_enabled,
        window_ms=settings.rate_limit_window,
        max_requests=settings.rate_limit_max,
        cleanup_interval_ms=settings.rate_limit_cleanup_interval,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Opens the shared HTTP client and runs the rate limiter sweep for the
        lifetime of the application.
        """
        async with init_http_client(settings):
            if not settings.tempo_client_token:
                logger.warning("TEMPO_CLIENT_TOKEN is not set; upstream calls will fail")
            else:
                payload = parse_client_token(settings.tempo_client_token)
                logger.info(f"Using upstream identity user_id={payload.user_id or 'unknown'}")

            rate_limiter.start()
            logger.info(
                "Application startup complete",
                extra={
                    "max_concurrent": settings.max_concurrent,
                    "max_queue_size": settings.max_queue_size,
                    "rate_limit_enabled": settings.rate_limit_enabled,
                    "auth_enabled": settings.auth_enabled,
                }
            )
            try:
                yield
            finally:
                await rate_limiter.stop()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Tempo Proxy",
        description="OpenAI-compatible proxy for the Tempo chat API with admission control and retries",
        version="1.0.0",
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.request_queue = RequestQueue(
        max_concurrent=settings.max_concurrent,
        max_queue_size=settings.max_queue_size,
    )
    app.state.rate_limiter = rate_limiter
    app.state.session_cache = session_cache
    app.state.provider = TempoProvider(
        chat_url=settings.upstream_chat_url,
        session_cache=session_cache,
        retry_policy=retry_policy,
    )
    app.state.stats = StatsCollector()

    # Add middleware (order matters: last added = outermost, first executed)
    # Rate limit middleware (innermost - closest to route)
    app.add_middleware(RateLimitMiddleware)

    # Request ID middleware (wraps the limiter so 429 responses carry the ID)
    app.add_middleware(RequestIdMiddleware)

    # CORS middleware (outermost - handles preflight requests first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
        max_age=600,
    )

    app.include_router(chat_router)
    app.include_router(stats_router)

    @app.exception_handler(GatewayException)
    async def gateway_error_handler(request: Request, exc: GatewayException) -> JSONResponse:
        """Render typed proxy failures with their own status code."""
        if exc.status_code >= 500:
            logger.warning(
                f"{type(exc).__name__}: {exc.message}",
                extra={"request_id": getattr(request.state, "request_id", None)}
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers=exc.headers() or None,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception message and type.
        """
        tb_str = traceback.format_exc()
        request_id = getattr(request.state, 'request_id', 'unknown')

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
                "traceback": tb_str,
            }
        )

        if settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                }
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,
            }
        )

    return app


# Create the application instance
app = create_app()
