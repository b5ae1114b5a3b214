"""Service-principal access tokens via the Azure AD client-credentials flow."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List

import aiohttp

from ..config import Settings
from ..errors import ServiceNotConfiguredError, UpstreamError

logger = logging.getLogger(__name__)


class IdentityTokenProvider:
    def __init__(
        self,
        *,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        authority_host: str = "https://login.microsoftonline.com",
        scope: str = "https://analysis.windows.net/powerbi/api/.default",
        timeout_seconds: float = 30.0,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.authority_host = authority_host.rstrip("/")
        self.scope = scope
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdentityTokenProvider":
        return cls(
            tenant_id=settings.aad_tenant_id,
            client_id=settings.sp_client_id,
            client_secret=settings.sp_client_secret,
            authority_host=settings.aad_authority_host,
            scope=settings.pbi_scope,
            timeout_seconds=settings.upstream_timeout,
        )

    def missing_settings(self) -> List[str]:
        required = {
            "AAD_TENANT_ID": self.tenant_id,
            "SP_CLIENT_ID": self.client_id,
            "SP_CLIENT_SECRET": self.client_secret,
        }
        return [key for key, value in required.items() if not value]

    @property
    def token_url(self) -> str:
        return f"{self.authority_host}/{self.tenant_id}/oauth2/v2.0/token"

    async def get_token(self) -> str:
        missing = self.missing_settings()
        if missing:
            raise ServiceNotConfiguredError(missing)

        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": self.scope,
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        logger.info("Requesting Azure AD access token")
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.token_url, data=form) as response:
                    body = await response.text()
                    status = response.status
        except asyncio.TimeoutError as exc:
            raise UpstreamError("Failed to obtain access token: request timed out") from exc
        except aiohttp.ClientError as exc:
            raise UpstreamError(f"Failed to obtain access token: {exc}") from exc

        parsed = _parse_json(body)
        if status >= 400:
            reason = parsed.get("error_description") or parsed.get("error") or body[:300]
            logger.error(
                "Azure AD token request failed (status=%s, tenant=%s, client=%s, secret=%s)",
                status,
                self.tenant_id,
                self.client_id,
                "provided" if self.client_secret else "missing",
            )
            raise UpstreamError(f"Failed to obtain access token: {reason}", status_code=status)

        token = str(parsed.get("access_token") or "").strip()
        if not token:
            raise UpstreamError("Failed to obtain access token: response had no access_token")
        logger.info("Access token obtained successfully")
        return token


def _parse_json(body: str) -> Dict[str, Any]:
    if not body:
        return {}
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
