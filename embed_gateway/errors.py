"""Error taxonomy shared by the HTTP handlers."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional


class ErrorCode(str, Enum):
    INPUT_INVALID = "InputInvalid"
    RECORD_NOT_FOUND = "RecordNotFound"
    RECORD_EXPIRED = "RecordExpired"
    CODE_MISMATCH = "CodeMismatch"
    DELIVERY_AUTH_FAILED = "DeliveryAuthFailed"
    DELIVERY_CONNECTION_FAILED = "DeliveryConnectionFailed"
    DELIVERY_TIMEOUT = "DeliveryTimeout"
    DELIVERY_ENVELOPE_INVALID = "DeliveryEnvelopeInvalid"
    DELIVERY_PROVIDER_REJECTED = "DeliveryProviderRejected"
    DELIVERY_NOT_CONFIGURED = "DeliveryNotConfigured"
    REPORT_NOT_FOUND = "ReportNotFound"
    SERVICE_NOT_CONFIGURED = "ServiceNotConfigured"
    UPSTREAM_FAILURE = "UpstreamFailure"
    INTERNAL_ERROR = "InternalError"


class GatewayError(Exception):
    """An error that is rendered to the client with the uniform error contract."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        status_code: int = 400,
        attempted_configurations: Optional[List[str]] = None,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.attempted_configurations = attempted_configurations
        self.suggestion = suggestion


def input_invalid(message: str) -> GatewayError:
    return GatewayError(ErrorCode.INPUT_INVALID, message, status_code=400)


class UpstreamError(RuntimeError):
    """Raised by the BI collaborators when the identity or report API fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ServiceNotConfiguredError(RuntimeError):
    def __init__(self, missing: List[str]):
        super().__init__(f"Missing required environment variables: {', '.join(missing)}")
        self.missing = list(missing)
