"""Liveness and operational status endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from .config import Settings
from .dependencies import get_delivery_orchestrator, get_metrics, get_otp_store, get_settings
from .services.mail_delivery_service import DeliveryOrchestrator
from .services.observability import MetricsCollector
from .services.otp_store import OtpStore

router = APIRouter(tags=["Ops"])


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/status")
async def status(
    settings: Settings = Depends(get_settings),
    store: OtpStore = Depends(get_otp_store),
    orchestrator: DeliveryOrchestrator = Depends(get_delivery_orchestrator),
    metrics: MetricsCollector = Depends(get_metrics),
):
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "config": settings.startup_snapshot(),
        "delivery": {
            "configured": orchestrator.configured,
            **orchestrator.describe(),
        },
        "pending_codes": len(store),
        "metrics": metrics.get_summary(),
    }
