"""
Power BI REST collaborator.
Lists workspace reports and generates embed tokens, attaching RLS identities
only for datasets that have row-level security configured.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

import aiohttp

from ..config import Settings
from ..errors import ServiceNotConfiguredError, UpstreamError

logger = logging.getLogger(__name__)


def build_embed_token_request(
    report_id: str,
    dataset_ids: List[str],
    user_identity: Optional[Mapping[str, Any]],
    *,
    rls_enabled_datasets: Iterable[str],
    default_role: str,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "datasets": [{"id": dataset_id} for dataset_id in dataset_ids],
        "reports": [{"id": report_id}],
    }
    username = (user_identity or {}).get("username")
    if not username:
        return body

    enabled = set(rls_enabled_datasets)
    rls_datasets = [dataset_id for dataset_id in dataset_ids if dataset_id in enabled]
    if not rls_datasets:
        logger.info("No RLS-enabled datasets in this request (%d total)", len(dataset_ids))
        return body

    roles = list((user_identity or {}).get("roles") or []) or [default_role]
    body["identities"] = [
        {
            "username": username,
            "roles": roles,
            "datasets": rls_datasets,
        }
    ]
    logger.info(
        "RLS applied to %d/%d datasets with roles %s",
        len(rls_datasets),
        len(dataset_ids),
        roles,
    )
    return body


def filter_reports_by_user(
    reports: List[Dict[str, Any]],
    user_roles: Iterable[str],
    access_control: Mapping[str, List[str]],
) -> List[Dict[str, Any]]:
    """Keep reports the user may see; reports without a rule are open to everyone."""
    roles = set(user_roles or [])
    visible = []
    for report in reports:
        allowed = list(access_control.get(report.get("name"), []))
        if not allowed:
            visible.append({**report, "allowedRoles": []})
            continue
        if roles.intersection(allowed):
            visible.append({**report, "allowedRoles": allowed})
    return visible


class PowerBIService:
    def __init__(
        self,
        *,
        workspace_id: str,
        api_base_url: str = "https://api.powerbi.com/v1.0/myorg",
        rls_enabled_datasets: Iterable[str] = (),
        rls_role_name: str = "Gebruiker",
        timeout_seconds: float = 30.0,
    ):
        self.workspace_id = workspace_id
        self.api_base_url = api_base_url.rstrip("/")
        self.rls_enabled_datasets = tuple(rls_enabled_datasets)
        self.rls_role_name = rls_role_name
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "PowerBIService":
        return cls(
            workspace_id=settings.pbi_workspace_id,
            api_base_url=settings.pbi_api_base_url,
            rls_enabled_datasets=settings.rls_enabled_datasets,
            rls_role_name=settings.rls_role_name,
            timeout_seconds=settings.upstream_timeout,
        )

    async def list_reports(self, access_token: str) -> List[Dict[str, Any]]:
        if not self.workspace_id:
            raise ServiceNotConfiguredError(["PBI_WORKSPACE_ID"])
        url = f"{self.api_base_url}/groups/{self.workspace_id}/reports"
        status, parsed, body = await self._request("GET", url, access_token)
        if status >= 400:
            logger.error("Error getting reports (status=%s): %s", status, body[:300])
            raise UpstreamError(
                f"Failed to fetch reports: {_extract_error(parsed, body)}",
                status_code=status,
            )
        value = parsed.get("value")
        return value if isinstance(value, list) else []

    async def generate_embed_token(
        self,
        access_token: str,
        report_id: str,
        dataset_ids: List[str],
        user_identity: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        request_body = build_embed_token_request(
            report_id,
            dataset_ids,
            user_identity,
            rls_enabled_datasets=self.rls_enabled_datasets,
            default_role=self.rls_role_name,
        )
        logger.info(
            "Requesting embed token for report %s (datasets=%s, rls=%s)",
            report_id,
            dataset_ids,
            "identities" in request_body,
        )
        url = f"{self.api_base_url}/GenerateToken"
        status, parsed, body = await self._request("POST", url, access_token, json_body=request_body)
        if status >= 400:
            logger.error(
                "Embed token request failed (status=%s): %s; request=%s",
                status,
                body[:300],
                json.dumps(request_body),
            )
            raise UpstreamError(
                f"Failed to generate embed token: {_extract_error(parsed, body)}",
                status_code=status,
            )
        return parsed

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> tuple[int, Dict[str, Any], str]:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
                async with session.request(method, url, json=json_body) as response:
                    body = await response.text()
                    return response.status, _parse_json(body), body
        except asyncio.TimeoutError as exc:
            raise UpstreamError(f"Power BI request timed out: {method} {url}") from exc
        except aiohttp.ClientError as exc:
            raise UpstreamError(f"Power BI request failed: {exc}") from exc


def _parse_json(body: str) -> Dict[str, Any]:
    if not body:
        return {}
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _extract_error(parsed: Dict[str, Any], raw_body: str) -> str:
    error = parsed.get("error")
    if isinstance(error, dict):
        message = error.get("message") or error.get("code")
        if message:
            return str(message)
    if isinstance(error, str) and error:
        return error
    return (raw_body or "unknown upstream error")[:300]
