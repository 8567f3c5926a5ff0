"""FastAPI application entrypoint.

Configures proxy headers, CORS, rate limiting, routers, exception handlers
and the maintenance scheduler, and exposes a healthcheck endpoint.
"""

import logging
import time
import traceback
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import Settings, get_settings
from .errors import DeepLinkError
from .middleware import RateLimitMiddleware, RequestLoggingMiddleware
from .routers import debug as debug_router
from .routers import deeplink as deeplink_router
from .routers import product as product_router
from .schemas import HealthResponse
from .state import build_services
from .telemetry import capture_exception, init_sentry


def _register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(DeepLinkError)
    async def deeplink_error_handler(request: Request, exc: DeepLinkError):
        headers = None
        if getattr(exc, "retry_after", None) is not None:
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(exc.to_response(), status_code=exc.status_code, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        error = f"{location}: {message}" if location else message
        return JSONResponse({"success": False, "error": error}, status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(
                {"success": False, "error": "Route not found", "path": request.url.path},
                status_code=404,
            )
        return JSONResponse(
            {"success": False, "error": str(exc.detail)},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"[ERROR] Unhandled error on {request.method} {request.url.path}")
        capture_exception(exc, extra={"path": request.url.path, "method": request.method})
        body = {"success": False, "error": "Internal server error"}
        if not settings.is_production:
            body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(body, status_code=500)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT)

    app = FastAPI(
        title="Deferlink API",
        description="""
        Deferred deep-link attribution service.

        Captures share, invite and product link clicks before the app is
        installed, redirects each visitor to the right store or app, and lets
        the app recover the click context after install via `/referrer/{id}`.
        """,
        version="1.0.0",
    )

    # Fails startup when the referral store cannot be initialized
    app.state.services = build_services(settings)
    app.state.started_at = time.monotonic()

    # Middleware runs in reverse order of registration: proxy headers resolve
    # the client address before rate limiting reads it
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    app.include_router(deeplink_router.router)
    app.include_router(product_router.router)
    if settings.ENABLE_DEBUG_ROUTES:
        app.include_router(debug_router.router)
        logger.warning("[STARTUP] Debug routes enabled")

    _register_exception_handlers(app, settings)

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return HealthResponse(
            status="ok",
            timestamp=datetime.now(timezone.utc),
            uptime=time.monotonic() - app.state.started_at,
        )

    @app.on_event("startup")
    async def startup_event():
        await app.state.services.scheduler.start()
        logger.info(f"[STARTUP] Deferlink ready on {settings.public_origin} ({settings.ENVIRONMENT})")

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.services.scheduler.stop()

    return app


app = create_app()
