import asyncio
import logging

from fastapi import APIRouter, Depends, Request

from .dependencies import get_delivery_orchestrator, get_otp_store
from .errors import ErrorCode, GatewayError, input_invalid
from .middleware.observability_middleware import request_id_from_request
from .schemas.api_response import success_payload
from .schemas.otp import IssueCodeRequest, VerifyCodeRequest
from .services.delivery_channels import DeliveryCause
from .services.mail_delivery_service import DeliveryOrchestrator, is_valid_email
from .services.otp_store import OtpStore, VerificationOutcome, normalize_identity

logger = logging.getLogger(__name__)

router = APIRouter(tags=["OTP"])


def _log_delivery_crash(task: asyncio.Future) -> None:
    # Also fires after the awaiting request was cancelled.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Verification email delivery crashed: %s", exc, exc_info=exc)


_VERIFY_FAILURES = {
    VerificationOutcome.NO_RECORD: (ErrorCode.RECORD_NOT_FOUND, "No OTP found for this email"),
    VerificationOutcome.EXPIRED: (ErrorCode.RECORD_EXPIRED, "OTP expired"),
    VerificationOutcome.MISMATCH: (ErrorCode.CODE_MISMATCH, "Invalid OTP"),
}


@router.post("/issue-code")
async def issue_code(
    payload: IssueCodeRequest,
    request: Request,
    store: OtpStore = Depends(get_otp_store),
    orchestrator: DeliveryOrchestrator = Depends(get_delivery_orchestrator),
):
    recipient = (payload.recipient or "").strip()
    if not recipient:
        raise input_invalid("Email required")
    if not is_valid_email(recipient):
        raise input_invalid("Invalid email format")

    identity = normalize_identity(recipient)
    code = store.issue(identity)

    # Issuance is committed; delivery must not be cancelled by a client disconnect.
    delivery = asyncio.ensure_future(
        orchestrator.send_verification_code(identity, code, store.ttl_seconds)
    )
    delivery.add_done_callback(_log_delivery_crash)
    report = await asyncio.shield(delivery)
    if not report.success:
        raise GatewayError(
            report.error_code or ErrorCode.DELIVERY_CONNECTION_FAILED,
            report.error_message or "Failed to send OTP.",
            status_code=report.status_code,
            attempted_configurations=report.attempted_configurations,
            suggestion=report.suggestion,
        )

    return success_payload(
        message="OTP sent to email",
        request_id=request_id_from_request(request),
    )


@router.post("/verify-code")
async def verify_code(
    payload: VerifyCodeRequest,
    request: Request,
    store: OtpStore = Depends(get_otp_store),
):
    recipient = (payload.recipient or "").strip()
    code = (payload.code or "").strip()
    if not recipient or not code:
        raise input_invalid("Email and OTP are required")

    outcome = store.verify(recipient, code)
    if outcome in _VERIFY_FAILURES:
        error_code, message = _VERIFY_FAILURES[outcome]
        raise GatewayError(error_code, message, status_code=400)

    logger.info("OTP verified successfully for: %s", normalize_identity(recipient))
    return success_payload(
        message="OTP Verified",
        request_id=request_id_from_request(request),
    )


@router.get("/test-delivery")
async def test_delivery(
    request: Request,
    orchestrator: DeliveryOrchestrator = Depends(get_delivery_orchestrator),
):
    if not orchestrator.configured:
        raise GatewayError(
            ErrorCode.DELIVERY_NOT_CONFIGURED,
            "No email delivery channel is configured.",
            status_code=503,
            suggestion=orchestrator.suggestion(),
        )

    report = await orchestrator.check_connectivity()
    if report.success:
        return success_payload(
            message="Delivery channel verified successfully",
            data={
                "channel": report.channel,
                "attemptedConfigurations": report.attempted_configurations,
            },
            request_id=request_id_from_request(request),
        )

    last_cause = report.attempts[-1].cause if report.attempts else None
    error_code, status_code, message = orchestrator.classify_failure(
        last_cause or DeliveryCause.CONNECTION_FAILED,
        report.attempted_configurations,
    )
    raise GatewayError(
        error_code,
        f"Delivery channel verification failed. {message}",
        status_code=status_code,
        attempted_configurations=report.attempted_configurations,
        suggestion=orchestrator.suggestion(),
    )
