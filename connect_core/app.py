"""
FastAPI application entry point for connect-core.

This module builds the FastAPI app with routers, middleware, error handlers
and the lifespan that owns the long-running pieces:

- InMemoryStateStore with its expiry sweeper
- AuthorizationStateService behind the /oauth/state endpoints
- TokenRefreshCoordinator with the HTTP refresh executor, fed by /oauth/tokens
- HttpRevocationExecutor for disconnects

Everything started in the lifespan is stopped on shutdown.
"""

import sys
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from connect_core.config import Settings, get_settings
from connect_core.errors import StateServiceUnavailable, StateStoreUnavailable
from connect_core.routers import health, oauth_state, tokens
from connect_core.services.authorization_state import AuthorizationStateService
from connect_core.services.oauth_executors import (
    HttpRefreshExecutor,
    HttpRevocationExecutor,
)
from connect_core.services.state_store import InMemoryStateStore
from connect_core.services.token_refresh_coordinator import TokenRefreshCoordinator
from connect_core.utils.crypto import CryptoService
from connect_core.utils.logging import (
    clear_request_context,
    configure_logging,
    set_request_context,
)

logger = structlog.get_logger(__name__)


def validate_configuration() -> Settings:
    """
    Load and validate application configuration.

    Exits the process with a readable report when configuration is invalid.
    """
    try:
        settings = get_settings()
        logger.info(
            "Configuration validated successfully",
            app_env=settings.app_env,
            app_version=settings.app_version,
            log_level=settings.log_level,
        )
        return settings
    except ValidationError as e:
        logger.error("Configuration validation failed")
        print("\n" + "=" * 60)
        print("CONFIGURATION ERROR - Application cannot start")
        print("=" * 60)

        for error in e.errors():
            field = ".".join(str(x) for x in error["loc"])
            print(f"\n{field}: {error['msg']}")
            if "fernet_key" in field.lower():
                print(
                    '   -> Generate: python -c "from cryptography.fernet import Fernet; '
                    'print(Fernet.generate_key().decode())"'
                )
            elif "redirect_uri" in field.lower():
                print("   -> Must be an absolute http(s) URL")

        print("\n" + "=" * 60)
        print("Fix the above errors in your .env file or environment variables")
        print("=" * 60 + "\n")

        sys.exit(1)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use; loaded from the environment when omitted
    """
    settings = settings or validate_configuration()
    configure_logging(
        log_level=settings.log_level,
        app_env=settings.app_env,
        app_version=settings.app_version,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"Starting {settings.app_name}",
            version=settings.app_version,
            environment=settings.app_env,
        )
        settings.log_config()

        try:
            settings.validate_required_for_production()
        except ValueError as e:
            logger.error("Production validation failed", error=str(e))
            sys.exit(1)

        store = InMemoryStateStore(default_ttl_seconds=settings.oauth_state_ttl_seconds)
        store.start_sweeper(settings.oauth_state_sweep_interval_seconds)

        crypto = CryptoService(
            settings.fernet_key, settings.fernet_previous_keys.split(",")
        )
        logger.info("Verifier encryption ready", key_count=crypto.get_key_count())

        app.state.state_store = store
        app.state.state_service = AuthorizationStateService(
            store,
            ttl_seconds=settings.oauth_state_ttl_seconds,
            crypto=crypto,
        )

        refresh_executor = HttpRefreshExecutor(settings)
        coordinator = TokenRefreshCoordinator.from_settings(settings, refresh_executor)
        app.state.token_coordinator = coordinator
        revocation_executor = HttpRevocationExecutor(settings)
        app.state.revocation_executor = revocation_executor
        if settings.oauth_background_refresh_enabled:
            await coordinator.start()

        yield

        logger.info(f"Shutting down {settings.app_name}...")
        await coordinator.stop()
        await refresh_executor.aclose()
        await revocation_executor.aclose()
        await store.close()

    app = FastAPI(
        title=settings.app_name,
        description="Platform connection service: OAuth state, PKCE and token health",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Attach a request ID to the request, its logs and the response."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        set_request_context(
            request_id=request_id, method=request.method, path=request.url.path
        )

        start_time = time.time()
        try:
            response = await call_next(request)
        finally:
            clear_request_context()

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = (
            f"{(time.time() - start_time) * 1000:.2f}ms"
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "unknown")

        error_code_map = {
            400: "APP-400-VALIDATION",
            401: "APP-401-AUTH",
            403: "APP-403-FORBIDDEN",
            404: "APP-404-NOT-FOUND",
            405: "APP-405-METHOD",
            500: "APP-500-INTERNAL",
        }
        error_code = error_code_map.get(exc.status_code, f"APP-{exc.status_code}")

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": error_code,
                "message": exc.detail,
                "origin": "app",
                "requestId": request_id,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "unknown")

        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "APP-400-VALIDATION",
                "message": "Request validation failed",
                "details": errors,
                "origin": "app",
                "requestId": request_id,
            },
        )

    @app.exception_handler(StateStoreUnavailable)
    @app.exception_handler(StateServiceUnavailable)
    async def state_unavailable_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error("Authorization state storage unavailable", error=str(exc))

        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": "APP-503-STATE-UNAVAILABLE",
                "message": "Authorization state storage is unavailable",
                "origin": "oauth",
                "requestId": request_id,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(
            "Unhandled exception",
            request_id=request_id,
            error=str(exc),
            exc_info=exc,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "APP-500-INTERNAL",
                "message": "An internal error occurred",
                "origin": "app",
                "requestId": request_id,
            },
        )

    app.include_router(health.router, tags=["health"])
    app.include_router(oauth_state.router)
    app.include_router(tokens.router)

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
            "health": "/healthz",
        }

    return app


app = create_app()
