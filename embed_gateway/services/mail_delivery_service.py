"""
Verification email delivery.
Tries the API channel first, then walks an ordered list of SMTP endpoints
with a fixed backoff, and classifies the final failure for the caller.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, Tuple

from ..config import Settings
from ..errors import ErrorCode
from .delivery_channels import (
    SSL_PORT,
    STARTTLS_PORT,
    ApiEmailChannel,
    DeliveryCause,
    DeliveryError,
    SecurityMode,
    SmtpEmailChannel,
    SmtpEndpoint,
    SmtpTimeouts,
)

logger = logging.getLogger(__name__)

VERIFICATION_SUBJECT = "Your Verification Code"

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

CLOUD_SUGGESTION = (
    "Consider using a cloud-friendly email service like SendGrid, Mailgun, or AWS SES "
    "for better reliability on cloud platforms."
)
LOCAL_SUGGESTION = "Check your SMTP settings and network connectivity."


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_PATTERN.match(email or ""))


def build_verification_email(code: str, ttl_seconds: int) -> Tuple[str, str]:
    minutes = max(1, ttl_seconds // 60)
    html = (
        "<h2>Your OTP Code</h2>"
        "<p>Your verification code is:</p>"
        f"<h1>{code}</h1>"
        f"<p>This code expires in {minutes} minutes.</p>"
    )
    return VERIFICATION_SUBJECT, html


def build_smtp_endpoints(
    configured_port: int,
    configured_secure: bool,
    *,
    restricted_network: bool = False,
) -> List[SmtpEndpoint]:
    configured = SmtpEndpoint(
        port=configured_port,
        security_mode=SecurityMode.SSL if configured_secure else SecurityMode.STARTTLS,
        label=f"{configured_port} (configured)",
    )
    starttls = SmtpEndpoint(STARTTLS_PORT, SecurityMode.STARTTLS, f"{STARTTLS_PORT} (TLS)")
    direct_ssl = SmtpEndpoint(SSL_PORT, SecurityMode.SSL, f"{SSL_PORT} (SSL)")

    # Restricted hosts block the configured port more often than 587.
    if restricted_network:
        candidates = [starttls, configured, direct_ssl]
    else:
        candidates = [configured, starttls, direct_ssl]

    unique: List[SmtpEndpoint] = []
    seen = set()
    for endpoint in candidates:
        if endpoint.key in seen:
            continue
        seen.add(endpoint.key)
        unique.append(endpoint)
    return unique


class EmailChannel(Protocol):
    kind: str

    @property
    def label(self) -> str: ...

    async def send(self, recipient: str, subject: str, html_body: str) -> None: ...

    async def verify(self) -> None: ...


class DeliveryMetrics(Protocol):
    def record_delivery(self, channel: str, success: bool) -> None: ...


@dataclass
class DeliveryAttempt:
    channel: str
    kind: str
    success: bool
    cause: Optional[DeliveryCause] = None
    detail: str = ""


@dataclass
class DeliveryReport:
    success: bool
    channel: Optional[str] = None
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    status_code: int = 200
    suggestion: Optional[str] = None

    @property
    def attempted_configurations(self) -> List[str]:
        return [attempt.channel for attempt in self.attempts]


@dataclass
class ConnectivityReport:
    success: bool
    channel: Optional[str] = None
    attempts: List[DeliveryAttempt] = field(default_factory=list)

    @property
    def attempted_configurations(self) -> List[str]:
        return [attempt.channel for attempt in self.attempts]


class DeliveryOrchestrator:
    def __init__(
        self,
        *,
        api_channel: Optional[EmailChannel] = None,
        smtp_channels: Sequence[EmailChannel] = (),
        check_channels: Optional[Sequence[EmailChannel]] = None,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        restricted_network: bool = False,
        restricted_free_tier: bool = False,
        metrics: Optional[DeliveryMetrics] = None,
    ):
        self.api_channel = api_channel
        self.smtp_channels = list(smtp_channels)
        self.check_channels = list(check_channels) if check_channels is not None else list(smtp_channels)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self.restricted_network = restricted_network
        self.restricted_free_tier = restricted_free_tier
        self.metrics = metrics
        self.last_verified_channel: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        metrics: Optional[DeliveryMetrics] = None,
    ) -> "DeliveryOrchestrator":
        api_channel = None
        if settings.api_channel_configured:
            api_channel = ApiEmailChannel(
                api_key=settings.sendgrid_api_key,
                from_email=settings.sendgrid_from_email,
                api_url=settings.sendgrid_api_url,
                timeout_seconds=settings.email_api_timeout,
            )

        smtp_channels: List[EmailChannel] = []
        check_channels: List[EmailChannel] = []
        if settings.smtp_configured:
            timeouts = SmtpTimeouts(
                connection=settings.smtp_connection_timeout,
                greeting=settings.smtp_greeting_timeout,
                transfer=settings.smtp_socket_timeout,
            )

            def _channel(endpoint: SmtpEndpoint) -> SmtpEmailChannel:
                return SmtpEmailChannel(
                    host=settings.smtp_host,
                    endpoint=endpoint,
                    username=settings.smtp_email,
                    password=settings.smtp_password,
                    timeouts=timeouts,
                    verify_tls=settings.smtp_tls_verify,
                    debug=settings.smtp_debug,
                )

            smtp_channels = [
                _channel(endpoint)
                for endpoint in build_smtp_endpoints(
                    settings.smtp_port,
                    settings.smtp_secure,
                    restricted_network=settings.restricted_network,
                )
            ]
            check_channels = [
                _channel(endpoint)
                for endpoint in build_smtp_endpoints(settings.smtp_port, settings.smtp_secure)
            ]

        return cls(
            api_channel=api_channel,
            smtp_channels=smtp_channels,
            check_channels=check_channels,
            backoff_seconds=settings.delivery_backoff_seconds,
            restricted_network=settings.restricted_network,
            restricted_free_tier=settings.restricted_free_tier,
            metrics=metrics,
        )

    @property
    def configured(self) -> bool:
        return self.api_channel is not None or bool(self.smtp_channels)

    def describe(self) -> dict:
        return {
            "api_channel": self.api_channel.label if self.api_channel else None,
            "smtp_channels": [channel.label for channel in self.smtp_channels],
            "backoff_seconds": self.backoff_seconds,
            "restricted_network": self.restricted_network,
            "last_verified_channel": self.last_verified_channel,
        }

    async def send_verification_code(
        self,
        recipient: str,
        code: str,
        ttl_seconds: int,
    ) -> DeliveryReport:
        subject, html_body = build_verification_email(code, ttl_seconds)
        return await self.deliver(recipient, subject, html_body)

    async def deliver(self, recipient: str, subject: str, html_body: str) -> DeliveryReport:
        attempts: List[DeliveryAttempt] = []
        last_error: Optional[DeliveryError] = None

        if self.api_channel is not None:
            attempt, last_error = await self._attempt(self.api_channel, recipient, subject, html_body)
            attempts.append(attempt)
            if attempt.success:
                return DeliveryReport(success=True, channel=attempt.channel, attempts=attempts)
            logger.warning(
                "API channel %s failed, falling back to SMTP: %s",
                attempt.channel,
                attempt.detail,
            )

        for index, channel in enumerate(self.smtp_channels):
            if index > 0:
                logger.info("Waiting %.1fs before trying %s", self.backoff_seconds, channel.label)
                await self._sleep(self.backoff_seconds)
            attempt, error = await self._attempt(channel, recipient, subject, html_body)
            attempts.append(attempt)
            if attempt.success:
                return DeliveryReport(success=True, channel=attempt.channel, attempts=attempts)
            last_error = error

        report = self._failure_report(last_error, attempts)
        logger.error(
            json.dumps(
                {
                    "event": "delivery_exhausted",
                    "recipient": recipient,
                    "attempted": report.attempted_configurations,
                    "last_cause": last_error.cause.value if last_error else None,
                    "error_code": report.error_code.value if report.error_code else None,
                }
            )
        )
        return report

    async def _attempt(
        self,
        channel: EmailChannel,
        recipient: str,
        subject: str,
        html_body: str,
    ) -> Tuple[DeliveryAttempt, Optional[DeliveryError]]:
        logger.info("Sending verification email to %s via %s", recipient, channel.label)
        try:
            await channel.send(recipient, subject, html_body)
        except DeliveryError as exc:
            self._record(channel.label, False)
            logger.warning(
                json.dumps(
                    {
                        "event": "delivery_attempt_failed",
                        "channel": channel.label,
                        "cause": exc.cause.value,
                        "status_code": exc.status_code,
                        "detail": str(exc),
                    }
                )
            )
            attempt = DeliveryAttempt(
                channel=channel.label,
                kind=channel.kind,
                success=False,
                cause=exc.cause,
                detail=str(exc),
            )
            return attempt, exc
        self._record(channel.label, True)
        logger.info("Verification email sent to %s via %s", recipient, channel.label)
        return DeliveryAttempt(channel=channel.label, kind=channel.kind, success=True), None

    def _record(self, channel: str, success: bool) -> None:
        if self.metrics is not None:
            self.metrics.record_delivery(channel, success)

    def suggestion(self) -> str:
        return CLOUD_SUGGESTION if self.restricted_network else LOCAL_SUGGESTION

    def _failure_report(
        self,
        last_error: Optional[DeliveryError],
        attempts: List[DeliveryAttempt],
    ) -> DeliveryReport:
        if last_error is None:
            return DeliveryReport(
                success=False,
                attempts=attempts,
                error_code=ErrorCode.DELIVERY_NOT_CONFIGURED,
                error_message=(
                    "No email delivery channel is configured. Set SENDGRID_API_KEY or "
                    "SMTP_HOST, SMTP_EMAIL and SMTP_PASSWORD."
                ),
                status_code=503,
                suggestion=self.suggestion(),
            )
        error_code, status_code, message = self.classify_failure(
            last_error.cause,
            [attempt.channel for attempt in attempts],
        )
        return DeliveryReport(
            success=False,
            attempts=attempts,
            error_code=error_code,
            error_message=message,
            status_code=status_code,
            suggestion=self.suggestion(),
        )

    def classify_failure(
        self,
        cause: DeliveryCause,
        attempted: List[str],
    ) -> Tuple[ErrorCode, int, str]:
        tried = ", ".join(attempted)
        if cause == DeliveryCause.AUTH_FAILED:
            return (
                ErrorCode.DELIVERY_AUTH_FAILED,
                401,
                "SMTP authentication failed (535). Please verify your SMTP_EMAIL and "
                "SMTP_PASSWORD.",
            )
        if cause == DeliveryCause.CONNECTION_FAILED:
            return (
                ErrorCode.DELIVERY_CONNECTION_FAILED,
                503,
                f"Could not connect to the mail server. Tried: {tried}. The mail host may be "
                "blocking connections from this network; try an alternate port or an email API "
                "channel.",
            )
        if cause == DeliveryCause.TIMEOUT:
            if self.restricted_free_tier:
                message = (
                    "Mail connection timed out. This hosting tier blocks outbound SMTP ports "
                    "(25, 465, 587). Set SENDGRID_API_KEY to deliver over HTTPS instead."
                )
            else:
                message = (
                    f"Mail connection timed out. Tried: {tried}. On restricted hosts set "
                    "SMTP_PORT=587 and SMTP_SECURE=false, or configure SENDGRID_API_KEY."
                )
            return ErrorCode.DELIVERY_TIMEOUT, 503, message
        if cause == DeliveryCause.ENVELOPE_INVALID:
            return ErrorCode.DELIVERY_ENVELOPE_INVALID, 400, "Invalid email address format."
        return (
            ErrorCode.DELIVERY_PROVIDER_REJECTED,
            502,
            "The mail provider rejected the message. Check the sender identity and, when the "
            "email API is in use, the SendGrid API key.",
        )

    async def check_connectivity(self) -> ConnectivityReport:
        channels: List[EmailChannel] = []
        if self.api_channel is not None:
            channels.append(self.api_channel)
        channels.extend(self.check_channels)

        attempts: List[DeliveryAttempt] = []
        for channel in channels:
            logger.info("Verifying delivery channel %s", channel.label)
            try:
                await channel.verify()
            except DeliveryError as exc:
                logger.warning("Delivery channel %s failed verification: %s", channel.label, exc)
                attempts.append(
                    DeliveryAttempt(
                        channel=channel.label,
                        kind=channel.kind,
                        success=False,
                        cause=exc.cause,
                        detail=str(exc),
                    )
                )
                continue
            attempts.append(DeliveryAttempt(channel=channel.label, kind=channel.kind, success=True))
            self.last_verified_channel = channel.label
            logger.info("Delivery channel %s verified", channel.label)
            return ConnectivityReport(success=True, channel=channel.label, attempts=attempts)

        if attempts:
            logger.warning(
                "All delivery channel checks failed (%s)",
                ", ".join(attempt.channel for attempt in attempts),
            )
        return ConnectivityReport(success=False, attempts=attempts)
