"""
Embed Gateway - FastAPI application factory.
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, configure_logging
from .errors import (
    ErrorCode,
    GatewayError,
    ServiceNotConfiguredError,
    UpstreamError,
)
from .middleware.observability_middleware import RequestMetricsMiddleware, request_id_from_request
from .ops_routes import router as ops_router
from .otp_routes import router as otp_router
from .report_routes import router as report_router
from .schemas.api_response import error_payload
from .services.identity_token_provider import IdentityTokenProvider
from .services.mail_delivery_service import DeliveryOrchestrator
from .services.observability import MetricsCollector
from .services.otp_store import OtpStore
from .services.powerbi_service import PowerBIService

logger = logging.getLogger(__name__)


async def _startup_delivery_check(orchestrator: DeliveryOrchestrator) -> None:
    try:
        report = await orchestrator.check_connectivity()
    except Exception:
        logger.exception("Startup delivery check crashed")
        return
    if report.success:
        logger.info("Delivery channel ready: %s", report.channel)
        return
    logger.warning(
        "No delivery channel could be verified (%s). Emails may not be delivered. "
        "On restricted hosts try SMTP_PORT=587 with SMTP_SECURE=false, or set SENDGRID_API_KEY.",
        ", ".join(report.attempted_configurations),
    )


async def _sweep_expired_codes(store: OtpStore, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        store.purge_expired()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan events"""
    settings: Settings = app.state.settings
    orchestrator: DeliveryOrchestrator = app.state.delivery_orchestrator

    logger.info(json.dumps({"event": "startup_checklist", **settings.startup_snapshot()}))

    missing_bi = settings.missing_bi_settings()
    if missing_bi:
        logger.warning(
            "Report endpoints are not configured. Missing: %s", ", ".join(missing_bi)
        )
    if not orchestrator.configured:
        logger.warning(
            "No email delivery channel configured. Set SENDGRID_API_KEY or "
            "SMTP_HOST, SMTP_EMAIL and SMTP_PASSWORD."
        )

    tasks: List[asyncio.Task] = []
    if settings.delivery_startup_check and orchestrator.configured:
        tasks.append(asyncio.create_task(_startup_delivery_check(orchestrator)))
    if settings.otp_sweep_interval_seconds > 0:
        tasks.append(
            asyncio.create_task(
                _sweep_expired_codes(app.state.otp_store, settings.otp_sweep_interval_seconds)
            )
        )

    yield

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("Shutdown complete")


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    error_code: Optional[ErrorCode] = None,
    **extra,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_payload(
            error=message,
            error_code=error_code.value if error_code else None,
            request_id=request_id_from_request(request),
            **extra,
        ),
    )


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return _error_response(
            request,
            exc.status_code,
            exc.message,
            exc.code,
            attempted_configurations=exc.attempted_configurations,
            suggestion=exc.suggestion,
        )

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError):
        logger.error("Upstream failure on %s: %s", request.url.path, exc)
        return _error_response(request, 502, str(exc), ErrorCode.UPSTREAM_FAILURE)

    @app.exception_handler(ServiceNotConfiguredError)
    async def not_configured_handler(request: Request, exc: ServiceNotConfiguredError):
        return _error_response(request, 503, str(exc), ErrorCode.SERVICE_NOT_CONFIGURED)

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.info("Rejected request body on %s: %s", request.url.path, exc.errors())
        return _error_response(request, 400, "Invalid request body", ErrorCode.INPUT_INVALID)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        message = detail if isinstance(detail, str) and detail.strip() else "Request failed"
        return _error_response(request, exc.status_code, message)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error request_id=%s path=%s",
            request_id_from_request(request),
            request.url.path,
        )
        return _error_response(request, 500, "Internal server error", ErrorCode.INTERNAL_ERROR)


def create_app(
    settings: Optional[Settings] = None,
    *,
    otp_store: Optional[OtpStore] = None,
    delivery_orchestrator: Optional[DeliveryOrchestrator] = None,
    token_provider: Optional[IdentityTokenProvider] = None,
    powerbi_service: Optional[PowerBIService] = None,
    metrics: Optional[MetricsCollector] = None,
) -> FastAPI:
    if settings is None:
        settings = Settings.from_env()
    if metrics is None:
        metrics = MetricsCollector()
    if otp_store is None:
        otp_store = OtpStore(ttl_seconds=settings.otp_ttl_seconds)
    if delivery_orchestrator is None:
        delivery_orchestrator = DeliveryOrchestrator.from_settings(settings, metrics=metrics)
    if token_provider is None:
        token_provider = IdentityTokenProvider.from_settings(settings)
    if powerbi_service is None:
        powerbi_service = PowerBIService.from_settings(settings)

    app = FastAPI(
        title="Embed Gateway API",
        description="Email one-time codes and Power BI embed tokens",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.otp_store = otp_store
    app.state.delivery_orchestrator = delivery_orchestrator
    app.state.token_provider = token_provider
    app.state.powerbi_service = powerbi_service

    _register_exception_handlers(app)

    allow_all = "*" in settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else list(settings.cors_origins),
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(RequestMetricsMiddleware, metrics=metrics)

    # The web client calls /api/...; older callers use the bare paths.
    for prefix in ("", "/api"):
        app.include_router(ops_router, prefix=prefix)
        app.include_router(otp_router, prefix=prefix)
        app.include_router(report_router, prefix=prefix)

    return app


_settings = Settings.from_env()
configure_logging(_settings.log_level)
app = create_app(_settings)
