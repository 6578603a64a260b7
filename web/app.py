"""
FastAPI application for the settlement service.

Production deployment configuration via environment variables (see
utils/config.py).
"""

import logging
import secrets
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.settlement import SettlementError, SettlementServices, ValidationError, build_services
from utils.config import Config
from web.admin_routes import router as admin_router
from web.invoice_routes import router as invoice_router
from web.notification_routes import router as notification_router
from web.property_routes import router as property_router
from web.realtime_routes import router as realtime_router
from web.responses import error_response


logger = logging.getLogger(__name__)


# =============================================================================
# Error Mapping
# =============================================================================


def _field_path(loc: tuple) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts) or "body"


def _settlement_error_details(exc: SettlementError) -> dict:
    details = dict(exc.details)
    if isinstance(exc, ValidationError):
        details["errors"] = [e.to_dict() for e in exc.errors]
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Map workflow exceptions onto the error envelope."""

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc.status_code, exc.message, _settlement_error_details(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": _field_path(tuple(err.get("loc", ()))), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return error_response(400, "Validation failed", {"errors": errors})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(500, "Internal server error")


# =============================================================================
# Application Factory
# =============================================================================


def create_app(
    services: Optional[SettlementServices] = None,
    config: Optional[Config] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Prebuilt services container (tests inject one)
        config: Configuration; defaults to the services' config or the environment
    """
    if services is not None:
        config = config or services.config
    config = config or Config.load()
    if not config.token_secret:
        # Tokens will not survive a restart
        config.token_secret = secrets.token_hex(32)
        logger.warning("TOKEN_SECRET not set; using an ephemeral signing secret")
    services = services or build_services(config)

    app = FastAPI(
        title="Settlement Engine",
        description="Property sales status workflow and settlement invoicing",
        version="0.1.0",
        docs_url=None if config.production else "/docs",
        redoc_url=None if config.production else "/redoc",
        openapi_url=None if config.production else "/openapi.json",
        debug=config.debug and not config.production,
    )
    app.state.services = services
    app.state.config = config

    # ==========================================================================
    # Healthcheck endpoints: no dependencies, no IO.
    # ==========================================================================
    @app.get("/", include_in_schema=False)
    def root():
        return {"status": "ok"}

    @app.get("/health", include_in_schema=False)
    def health():
        return {
            "status": "healthy",
            "version": "0.1.0",
            "environment": "production" if config.production else "development",
        }

    if config.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PATCH"],
            allow_headers=["*"],
        )

    register_exception_handlers(app)

    app.include_router(property_router)
    app.include_router(invoice_router)
    app.include_router(notification_router)
    app.include_router(admin_router)
    app.include_router(realtime_router)

    logger.info("Settlement API ready (%s)", "production" if config.production else "development")
    return app
