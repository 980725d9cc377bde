"""
Chat Two-Factor Service - Main FastAPI Application

Second-factor authentication for the chat server:

- TOTP enrollment with QR provisioning and one-time backup codes
- Email codes and password fallback as alternative methods
- Second-factor enforcement at login and on sensitive methods
- Login-token authentication (X-User-Id / X-Auth-Token)
- In-memory or Firestore persistence
- Structured JSON logs correlated with OpenTelemetry traces
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
import sys

from app.config import Settings, get_settings
from app.utils.logger import get_logger
from app.middleware.token_auth import TokenAuthMiddleware
from app.middleware.request_tracing import RequestTracingMiddleware
from app.routers import health, login, methods, two_factor
from app.services.container import TwoFactorServices, build_services
from app.services.errors import TwoFactorError

settings = get_settings()

logger = get_logger(__name__, level=settings.log_level)

ERROR_STATUS_CODES = {
    "not-authorized": 401,
    "error-invalid-user": 401,
    "login-failed": 401,
    "invalid-totp": 400,
    "totp-required": 401,
    "totp-invalid": 401,
    "totp-max-attempts": 429,
    "error-email-send-failed": 502,
}


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[TwoFactorServices] = None,
) -> FastAPI:
    """Build the application around a set of two-factor services."""
    settings = settings or get_settings()
    services = services or build_services(settings)
    methods.register_default_methods(services)

    app = FastAPI(
        title="Chat Two-Factor API",
        description="Second-factor enrollment and enforcement for the chat server",
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc"
    )
    app.state.two_factor_services = services

    logger.info(
        "Application starting",
        app_name=settings.app_name,
        storage_backend=settings.storage_backend,
        two_factor_enabled=settings.two_factor_enabled,
        debug=settings.debug
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8080"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "X-User-Id",
            "X-Auth-Token",
            "X-2fa-Code",
            "X-2fa-Method",
        ],
    )

    app.add_middleware(
        TokenAuthMiddleware,
        sessions=services.sessions,
        bypass_paths=settings.auth_bypass_paths,
    )

    # Outermost: every log line of the request carries its trace ID
    app.add_middleware(RequestTracingMiddleware)

    app.include_router(health.router)
    app.include_router(login.router)
    app.include_router(two_factor.router)
    app.include_router(methods.router)

    @app.exception_handler(TwoFactorError)
    async def two_factor_exception_handler(request: Request, exc: TwoFactorError):
        status_code = ERROR_STATUS_CODES.get(exc.error, 400)
        logger.info(
            "Two-factor request rejected",
            path=request.url.path,
            error=exc.error,
            status_code=status_code
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors"""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            error_type=type(exc).__name__
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": "An unexpected error occurred. Please try again later."
            }
        )

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            "Application startup complete",
            python_version=sys.version,
            methods=services.pipeline.method_names,
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        """Flush pending notifications and close connections"""
        logger.info("Application shutting down")
        await services.notifier.drain()

        if settings.storage_backend == "firestore":
            from app.services.firestore_client import close_firestore_client

            await close_firestore_client()

    return app


app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8080,
        log_level=settings.log_level.lower(),
        access_log=True
    )
