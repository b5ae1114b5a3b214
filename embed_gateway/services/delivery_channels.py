"""
Email delivery channels.
Every channel offers the same ``send`` capability and reports failures as a
DeliveryError carrying a typed cause.
"""
from __future__ import annotations

import asyncio
import json
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)

STARTTLS_PORT = 587
SSL_PORT = 465


class DeliveryCause(str, Enum):
    PROVIDER_REJECTED = "provider_rejected"
    AUTH_FAILED = "auth_failed"
    CONNECTION_FAILED = "connection_failed"
    TIMEOUT = "timeout"
    ENVELOPE_INVALID = "envelope_invalid"


class SecurityMode(str, Enum):
    STARTTLS = "starttls"
    SSL = "ssl"


class DeliveryError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        channel: str,
        cause: DeliveryCause,
        status_code: Optional[int] = None,
        response_excerpt: str = "",
    ):
        super().__init__(message)
        self.channel = channel
        self.cause = cause
        self.status_code = status_code
        self.response_excerpt = (response_excerpt or "")[:400]


@dataclass(frozen=True)
class SmtpEndpoint:
    port: int
    security_mode: SecurityMode
    label: str

    @property
    def key(self) -> tuple:
        return (self.port, self.security_mode)


@dataclass(frozen=True)
class SmtpTimeouts:
    connection: float = 60.0
    greeting: float = 30.0
    transfer: float = 60.0


class ApiEmailChannel:
    """Transactional email over the SendGrid v3 HTTP API."""

    kind = "api"

    def __init__(
        self,
        *,
        api_key: str,
        from_email: str,
        api_url: str = "https://api.sendgrid.com/v3",
        timeout_seconds: float = 20.0,
        label: str = "sendgrid-api",
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.label = label

    def _headers(self) -> Dict[str, str]:
        return {
            "accept": "application/json",
            "authorization": f"Bearer {self.api_key}",
        }

    async def send(self, recipient: str, subject: str, html_body: str) -> None:
        payload: Dict[str, Any] = {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": self.from_email},
            "subject": subject,
            "content": [{"type": "text/html", "value": html_body}],
        }
        status, body = await self._request("POST", "/mail/send", json_payload=payload)
        if not 200 <= status < 300:
            reason = _extract_provider_error(body)
            raise DeliveryError(
                f"SendGrid send failed ({status}): {reason}",
                channel=self.label,
                cause=DeliveryCause.PROVIDER_REJECTED,
                status_code=status,
                response_excerpt=body,
            )

    async def verify(self) -> None:
        status, body = await self._request("GET", "/scopes")
        if not 200 <= status < 300:
            raise DeliveryError(
                f"SendGrid API key check failed ({status}): {_extract_provider_error(body)}",
                channel=self.label,
                cause=DeliveryCause.PROVIDER_REJECTED,
                status_code=status,
                response_excerpt=body,
            )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_payload: Optional[Dict[str, Any]] = None,
    ) -> tuple[int, str]:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as session:
                async with session.request(
                    method,
                    f"{self.api_url}{path}",
                    json=json_payload,
                ) as response:
                    return response.status, await response.text()
        except asyncio.TimeoutError as exc:
            raise DeliveryError(
                f"SendGrid request timed out after {self.timeout_seconds}s",
                channel=self.label,
                cause=DeliveryCause.TIMEOUT,
            ) from exc
        except aiohttp.ClientError as exc:
            raise DeliveryError(
                f"SendGrid request failed: {exc}",
                channel=self.label,
                cause=DeliveryCause.CONNECTION_FAILED,
            ) from exc


class _PhasedTimeoutMixin:
    """Applies the greeting budget once the TCP (and SSL) connection is up."""

    def __init__(self, *args, greeting_timeout: float, **kwargs):
        self._greeting_timeout = greeting_timeout
        super().__init__(*args, **kwargs)

    def _get_socket(self, host, port, timeout):
        sock = super()._get_socket(host, port, timeout)
        sock.settimeout(self._greeting_timeout)
        return sock


class PhasedSMTP(_PhasedTimeoutMixin, smtplib.SMTP):
    pass


class PhasedSMTPSSL(_PhasedTimeoutMixin, smtplib.SMTP_SSL):
    pass


class SmtpEmailChannel:
    """Store-and-forward delivery through one SMTP endpoint."""

    kind = "smtp"

    def __init__(
        self,
        *,
        host: str,
        endpoint: SmtpEndpoint,
        username: str,
        password: str,
        from_email: Optional[str] = None,
        timeouts: SmtpTimeouts = SmtpTimeouts(),
        verify_tls: bool = False,
        debug: bool = False,
    ):
        self.host = host
        self.endpoint = endpoint
        self.username = username
        self.password = password
        self.from_email = from_email or username
        self.timeouts = timeouts
        self.verify_tls = verify_tls
        self.debug = debug

    @property
    def label(self) -> str:
        return self.endpoint.label

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _open(self) -> smtplib.SMTP:
        if self.endpoint.security_mode == SecurityMode.SSL:
            server: smtplib.SMTP = PhasedSMTPSSL(
                timeout=self.timeouts.connection,
                greeting_timeout=self.timeouts.greeting,
                context=self._tls_context(),
            )
        else:
            server = PhasedSMTP(
                timeout=self.timeouts.connection,
                greeting_timeout=self.timeouts.greeting,
            )
        if self.debug:
            server.set_debuglevel(1)
        try:
            server.connect(self.host, self.endpoint.port)
            server.sock.settimeout(self.timeouts.transfer)
            server.ehlo()
            if self.endpoint.security_mode == SecurityMode.STARTTLS:
                server.starttls(context=self._tls_context())
                server.ehlo()
            server.login(self.username, self.password)
        except BaseException:
            server.close()
            raise
        return server

    def _build_message(self, recipient: str, subject: str, html_body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.set_content("Please view this message in an HTML-capable email client.")
        msg.add_alternative(html_body, subtype="html")
        return msg

    def _send_blocking(self, recipient: str, subject: str, html_body: str) -> None:
        server = self._open()
        try:
            server.send_message(self._build_message(recipient, subject, html_body))
        finally:
            _quit_quietly(server)

    def _verify_blocking(self) -> None:
        server = self._open()
        _quit_quietly(server)

    async def send(self, recipient: str, subject: str, html_body: str) -> None:
        try:
            await asyncio.to_thread(self._send_blocking, recipient, subject, html_body)
        except Exception as exc:
            raise self._delivery_error(exc) from exc

    async def verify(self) -> None:
        try:
            await asyncio.to_thread(self._verify_blocking)
        except Exception as exc:
            raise self._delivery_error(exc) from exc

    def _delivery_error(self, exc: Exception) -> DeliveryError:
        cause = classify_smtp_exception(exc)
        status_code = getattr(exc, "smtp_code", None)
        return DeliveryError(
            f"SMTP {self.label} failed: {type(exc).__name__}: {exc}",
            channel=self.label,
            cause=cause,
            status_code=status_code if isinstance(status_code, int) else None,
        )


def classify_smtp_exception(exc: BaseException) -> DeliveryCause:
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return DeliveryCause.AUTH_FAILED
    if isinstance(exc, (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused)):
        return DeliveryCause.ENVELOPE_INVALID
    if isinstance(exc, smtplib.SMTPDataError):
        return DeliveryCause.PROVIDER_REJECTED
    if _caused_by_timeout(exc):
        return DeliveryCause.TIMEOUT
    return DeliveryCause.CONNECTION_FAILED


def _caused_by_timeout(exc: BaseException) -> bool:
    """True if ``exc`` or anything in its cause/context chain is a timeout.

    smtplib turns a read timeout into ``SMTPServerDisconnected`` and keeps the
    socket timeout only as ``__context__``.
    """
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, TimeoutError):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def _quit_quietly(server: smtplib.SMTP) -> None:
    try:
        server.quit()
    except (smtplib.SMTPException, OSError):
        server.close()


def _extract_provider_error(raw_body: str) -> str:
    if not raw_body:
        return "unknown provider error"
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return raw_body[:300]
    if isinstance(parsed, dict):
        errors = parsed.get("errors")
        if isinstance(errors, list) and errors:
            messages = []
            for item in errors[:3]:
                if isinstance(item, dict):
                    messages.append(str(item.get("message") or item))
                else:
                    messages.append(str(item))
            return "; ".join(messages)
        direct = parsed.get("message") or parsed.get("error")
        if direct:
            return str(direct)
    return raw_body[:300]
