"""FastAPI dependencies that hand the app-owned services to the routes."""

from fastapi import Request

from .config import Settings
from .services.identity_token_provider import IdentityTokenProvider
from .services.mail_delivery_service import DeliveryOrchestrator
from .services.observability import MetricsCollector
from .services.otp_store import OtpStore
from .services.powerbi_service import PowerBIService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_otp_store(request: Request) -> OtpStore:
    return request.app.state.otp_store


def get_delivery_orchestrator(request: Request) -> DeliveryOrchestrator:
    return request.app.state.delivery_orchestrator


def get_token_provider(request: Request) -> IdentityTokenProvider:
    return request.app.state.token_provider


def get_powerbi_service(request: Request) -> PowerBIService:
    return request.app.state.powerbi_service


def get_metrics(request: Request) -> MetricsCollector:
    return request.app.state.metrics
