"""
FastAPI Application Factory
===========================

This is the main entry point for the Storm Gate service that sits between
client applications, the local account store and Microsoft Entra ID.

Architecture:
    Client Apps → Storm Gate (this service) → Azure AD / Email Integrator

Routers:
    - /auth/*       : OIDC login, callback, token refresh/logout, approvals
    - /register, /login, /check-status, /forgot-password, /reset-password/*
                    : Local accounts
    - /users/{id}    : Profile update and deletion (self or admin)
    - /admin/users  : Admin user listing
    - /health       : Health check endpoint

Environment Variables Required:
    - AZURE_TENANT_ID, AZURE_CLIENT_ID: Microsoft Entra ID tenant and application
    - ACCESS_TOKEN_SECRET, REFRESH_TOKEN_SECRET: Internal token signing secrets
    See stormgate/config.py for the complete list.

Running the Service:
    Development:
        uvicorn stormgate.main:app --reload --host 0.0.0.0 --port 3001

    Production:
        ENVIRONMENT=production uvicorn stormgate.main:app --host 0.0.0.0 --port 3001

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn stormgate.main:app --reload
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stormgate import __version__
from stormgate.accounts.approval import ApprovalWorkflow
from stormgate.accounts.credentials import CredentialService
from stormgate.accounts.profiles import ProfileService
from stormgate.accounts.resolver import AccountResolver
from stormgate.accounts.routes import accounts_router
from stormgate.accounts.store import InMemoryUserStore, UserStore
from stormgate.auth.oidc import InMemoryOIDCSessionStore, OIDCFlow, OIDCSessionStore
from stormgate.auth.routes import auth_router
from stormgate.auth.session import RefreshTokenStore, TokenService
from stormgate.auth.utils import SigningKeyCache, make_jwks_fetcher
from stormgate.config import Settings, get_settings, validate_configuration
from stormgate.errors import ServiceError
from stormgate.notifications import NotificationChannel

logger = logging.getLogger("stormgate.main")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Report non-fatal configuration warnings

    Shutdown tasks:
        - Clear the signing-key cache
    """
    settings: Settings = app.state.settings
    setup_logging(settings.LOG_LEVEL)

    report = validate_configuration(settings)
    for warning in report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")

    logger.info(
        "Storm Gate service started",
        extra={
            "version": __version__,
            "environment": settings.ENVIRONMENT,
        }
    )

    yield

    logger.info("Shutting down Storm Gate service")
    app.state.key_cache.clear()


def create_app(
    settings: Optional[Settings] = None,
    *,
    user_store: Optional[UserStore] = None,
    session_store: Optional[OIDCSessionStore] = None,
    key_cache: Optional[SigningKeyCache] = None,
    provider_transport: Optional[httpx.AsyncBaseTransport] = None,
    notifier_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Application factory function.

    Builds the shared components into app.state; any of the stores, the key
    cache and the outbound HTTP transports can be supplied by the caller.

    Raises:
        ConfigurationError: If a signing secret is missing
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Storm Gate",
        description="User management and authentication gateway",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Shared components
    tokens = TokenService(settings)
    refresh_tokens = RefreshTokenStore(ttl_seconds=settings.REFRESH_TOKEN_EXPIRY_DAYS * 24 * 60 * 60)
    user_store = user_store or InMemoryUserStore()
    session_store = session_store or InMemoryOIDCSessionStore(ttl_seconds=settings.OIDC_SESSION_TTL_SECONDS)
    key_cache = key_cache or SigningKeyCache(
        make_jwks_fetcher(
            settings.jwks_uri,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            transport=provider_transport,
        ),
        ttl_seconds=settings.JWKS_CACHE_SECONDS,
    )
    notifier = NotificationChannel(settings, transport=notifier_transport)
    approvals = ApprovalWorkflow(user_store, tokens, refresh_tokens, notifier, settings)

    app.state.settings = settings
    app.state.tokens = tokens
    app.state.refresh_tokens = refresh_tokens
    app.state.user_store = user_store
    app.state.session_store = session_store
    app.state.key_cache = key_cache
    app.state.notifier = notifier
    app.state.approvals = approvals
    app.state.credentials = CredentialService(user_store, tokens, notifier, settings)
    app.state.profiles = ProfileService(user_store, refresh_tokens)
    app.state.oidc_flow = OIDCFlow(
        settings,
        session_store,
        key_cache,
        AccountResolver(user_store, approvals),
        approvals,
        tokens,
        refresh_tokens,
        transport=provider_transport,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Mount routers
    app.include_router(auth_router)
    app.include_router(accounts_router)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "service": "stormgate",
            "version": __version__
        }

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                f"Service error: {exc.message}",
                extra={"path": request.url.path, "method": request.method}
            )

        content: Dict[str, Any] = {"error": exc.error_code, "message": exc.message}
        if exc.details:
            content["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={
                "error": "invalid_request",
                "message": "Request validation failed",
                "details": {"errors": errors},
            }
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            }
        )

    return app


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "stormgate.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=not settings.is_production,
        log_level=settings.LOG_LEVEL.lower()
    )
