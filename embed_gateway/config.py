"""Environment-driven settings for the gateway."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from dotenv import load_dotenv

load_dotenv()

DEFAULT_RLS_ENABLED_DATASETS: Tuple[str, ...] = (
    "a48db15f-a2b5-41a9-a46d-67991ae69283",
    "1ca5fa8b-d1a9-4ce5-b740-d9f0a148ad62",
    "7a7aa6bd-d65c-4a4c-9859-b9533f3cb974",
)


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except Exception:
        return default
    return parsed if parsed > 0 else default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = float(value.strip())
    except Exception:
        return default
    return parsed if parsed >= minimum else default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_access_control(name: str) -> Dict[str, List[str]]:
    raw = _env_str(name)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logging.getLogger(__name__).warning("%s is not valid JSON; ignoring it", name)
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {
        str(report_name): [str(role) for role in roles]
        for report_name, roles in parsed.items()
        if isinstance(roles, list)
    }


@dataclass(frozen=True)
class Settings:
    port: int = 3001
    app_env: str = "development"
    restricted_network: bool = False
    restricted_free_tier: bool = False
    log_level: str = "INFO"

    # Protocol (SMTP) channel
    smtp_host: str = ""
    smtp_port: int = 465
    smtp_secure: bool = True
    smtp_email: str = ""
    smtp_password: str = ""
    smtp_tls_verify: bool = False
    smtp_connection_timeout: float = 60.0
    smtp_greeting_timeout: float = 30.0
    smtp_socket_timeout: float = 60.0
    smtp_debug: bool = False

    # API channel
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = ""
    sendgrid_api_url: str = "https://api.sendgrid.com/v3"
    email_api_timeout: float = 20.0

    delivery_backoff_seconds: float = 1.0
    delivery_startup_check: bool = True

    otp_ttl_seconds: int = 300
    otp_sweep_interval_seconds: float = 0.0

    # BI collaborator
    aad_tenant_id: str = ""
    sp_client_id: str = ""
    sp_client_secret: str = ""
    pbi_workspace_id: str = ""
    aad_authority_host: str = "https://login.microsoftonline.com"
    pbi_api_base_url: str = "https://api.powerbi.com/v1.0/myorg"
    pbi_scope: str = "https://analysis.windows.net/powerbi/api/.default"
    rls_enabled_datasets: Tuple[str, ...] = DEFAULT_RLS_ENABLED_DATASETS
    rls_role_name: str = "Gebruiker"
    report_access_control: Dict[str, List[str]] = field(default_factory=dict)
    upstream_timeout: float = 30.0

    cors_origins: Tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> "Settings":
        app_env = (_env_str("APP_ENV") or _env_str("NODE_ENV") or "development").lower()
        is_production = app_env == "production"
        on_render = bool(_env_str("RENDER"))
        on_heroku = bool(_env_str("HEROKU"))
        restricted = _env_bool("RESTRICTED_NETWORK", is_production or on_render or on_heroku)

        smtp_port = _env_int("SMTP_PORT", 587 if is_production else 465)
        smtp_email = _env_str("SMTP_EMAIL") or _env_str("SMTP_USER")

        cors_origins: Tuple[str, ...] = ("*",)
        if not _env_bool("CORS_ALLOW_ALL", True) or _env_str("CORS_ORIGINS"):
            cors_origins = _env_list("CORS_ORIGINS", ())

        return cls(
            port=_env_int("PORT", 3001),
            app_env=app_env,
            restricted_network=restricted,
            restricted_free_tier=on_render and not _env_str("RENDER_PAID"),
            log_level=(_env_str("LOG_LEVEL") or "INFO").upper(),
            smtp_host=_env_str("SMTP_HOST"),
            smtp_port=smtp_port,
            smtp_secure=smtp_port == 465 or _env_bool("SMTP_SECURE", False),
            smtp_email=smtp_email,
            smtp_password=_env_str("SMTP_PASSWORD") or _env_str("SMTP_PASS"),
            smtp_tls_verify=_env_bool("SMTP_TLS_VERIFY", False),
            smtp_connection_timeout=_env_float("SMTP_CONNECTION_TIMEOUT_SECONDS", 60.0, minimum=0.1),
            smtp_greeting_timeout=_env_float("SMTP_GREETING_TIMEOUT_SECONDS", 30.0, minimum=0.1),
            smtp_socket_timeout=_env_float("SMTP_SOCKET_TIMEOUT_SECONDS", 60.0, minimum=0.1),
            smtp_debug=_env_bool("SMTP_DEBUG", False),
            sendgrid_api_key=_env_str("SENDGRID_API_KEY"),
            sendgrid_from_email=_env_str("SENDGRID_FROM_EMAIL") or smtp_email,
            sendgrid_api_url=(_env_str("SENDGRID_API_URL") or "https://api.sendgrid.com/v3").rstrip("/"),
            email_api_timeout=_env_float("EMAIL_API_TIMEOUT_SECONDS", 20.0, minimum=0.1),
            delivery_backoff_seconds=_env_float("DELIVERY_BACKOFF_SECONDS", 1.0),
            delivery_startup_check=_env_bool("DELIVERY_STARTUP_CHECK", True),
            otp_ttl_seconds=_env_int("OTP_TTL_SECONDS", 300),
            otp_sweep_interval_seconds=_env_float("OTP_SWEEP_INTERVAL_SECONDS", 0.0),
            aad_tenant_id=_env_str("AAD_TENANT_ID"),
            sp_client_id=_env_str("SP_CLIENT_ID"),
            sp_client_secret=_env_str("SP_CLIENT_SECRET"),
            pbi_workspace_id=_env_str("PBI_WORKSPACE_ID"),
            aad_authority_host=(
                _env_str("AAD_AUTHORITY_HOST") or "https://login.microsoftonline.com"
            ).rstrip("/"),
            pbi_api_base_url=(
                _env_str("PBI_API_BASE_URL") or "https://api.powerbi.com/v1.0/myorg"
            ).rstrip("/"),
            rls_enabled_datasets=_env_list("RLS_ENABLED_DATASETS", DEFAULT_RLS_ENABLED_DATASETS),
            rls_role_name=_env_str("RLS_ROLE_NAME") or "Gebruiker",
            report_access_control=_env_access_control("REPORT_ACCESS_CONTROL"),
            upstream_timeout=_env_float("UPSTREAM_TIMEOUT_SECONDS", 30.0, minimum=0.1),
            cors_origins=cors_origins,
        )

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_email and self.smtp_password)

    @property
    def api_channel_configured(self) -> bool:
        return bool(self.sendgrid_api_key and self.sendgrid_from_email)

    def missing_bi_settings(self) -> List[str]:
        required = {
            "AAD_TENANT_ID": self.aad_tenant_id,
            "SP_CLIENT_ID": self.sp_client_id,
            "SP_CLIENT_SECRET": self.sp_client_secret,
            "PBI_WORKSPACE_ID": self.pbi_workspace_id,
        }
        return [key for key, value in required.items() if not value]

    def startup_snapshot(self) -> dict:
        """Redacted view of the configuration for the startup log and /status."""
        return {
            "app_env": self.app_env,
            "restricted_network": self.restricted_network,
            "smtp_host": self.smtp_host or None,
            "smtp_port": self.smtp_port,
            "smtp_secure": self.smtp_secure,
            "smtp_email": self.smtp_email or None,
            "has_smtp_password": bool(self.smtp_password),
            "has_sendgrid_api_key": bool(self.sendgrid_api_key),
            "sendgrid_from_email": self.sendgrid_from_email or None,
            "delivery_backoff_seconds": self.delivery_backoff_seconds,
            "otp_ttl_seconds": self.otp_ttl_seconds,
            "otp_sweep_interval_seconds": self.otp_sweep_interval_seconds,
            "pbi_workspace_id": self.pbi_workspace_id or None,
            "missing_bi_settings": self.missing_bi_settings(),
        }


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
