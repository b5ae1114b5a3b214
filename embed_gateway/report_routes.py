"""
Report listing and embed-token routes backed by the Power BI collaborator.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request

from .config import Settings
from .dependencies import get_powerbi_service, get_settings, get_token_provider
from .errors import ErrorCode, GatewayError, input_invalid
from .middleware.observability_middleware import request_id_from_request
from .schemas.api_response import success_payload
from .schemas.reports import EmbedConfigRequest, EmbedTokenRequest, ReportsRequest
from .services.identity_token_provider import IdentityTokenProvider
from .services.powerbi_service import PowerBIService, filter_reports_by_user

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Reports"])


@router.post("/reports")
async def list_reports(
    payload: ReportsRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    token_provider: IdentityTokenProvider = Depends(get_token_provider),
    powerbi: PowerBIService = Depends(get_powerbi_service),
):
    identity = payload.user_identity
    if identity is None or not identity.email:
        raise input_invalid("User identity is required")

    access_token = await token_provider.get_token()
    reports = await powerbi.list_reports(access_token)
    visible = filter_reports_by_user(reports, identity.roles, settings.report_access_control)
    logger.info(
        "Returning %d of %d reports for %s",
        len(visible),
        len(reports),
        identity.email,
    )

    return success_payload(
        data={
            "reports": [
                {
                    "id": report.get("id"),
                    "name": report.get("name"),
                    "embedUrl": report.get("embedUrl"),
                    "datasetId": report.get("datasetId"),
                    "allowedRoles": report.get("allowedRoles") or [],
                }
                for report in visible
            ],
            "userInfo": {"email": identity.email, "roles": identity.roles},
        },
        request_id=request_id_from_request(request),
    )


@router.post("/embed-token")
async def embed_token(
    payload: EmbedTokenRequest,
    request: Request,
    token_provider: IdentityTokenProvider = Depends(get_token_provider),
    powerbi: PowerBIService = Depends(get_powerbi_service),
):
    if not payload.report_id or not payload.dataset_id:
        raise input_invalid("reportId and datasetId are required")

    user_identity = None
    if payload.user_identity is not None and not payload.bypass_rls:
        user_identity = payload.user_identity.model_dump()

    access_token = await token_provider.get_token()
    token_data = await powerbi.generate_embed_token(
        access_token,
        payload.report_id,
        [payload.dataset_id],
        user_identity,
    )

    return success_payload(
        data={
            "embedToken": token_data.get("token"),
            "tokenId": token_data.get("tokenId"),
            "expiration": token_data.get("expiration"),
            "rlsBypassed": payload.bypass_rls,
        },
        request_id=request_id_from_request(request),
    )


@router.post("/embed-config/{report_id}")
async def embed_config(
    report_id: str,
    request: Request,
    payload: Optional[EmbedConfigRequest] = Body(default=None),
    token_provider: IdentityTokenProvider = Depends(get_token_provider),
    powerbi: PowerBIService = Depends(get_powerbi_service),
):
    access_token = await token_provider.get_token()
    reports = await powerbi.list_reports(access_token)
    report = next((item for item in reports if item.get("id") == report_id), None)
    if report is None:
        raise GatewayError(ErrorCode.REPORT_NOT_FOUND, "Report not found", status_code=404)

    user_identity = None
    if payload is not None and payload.user_identity is not None:
        user_identity = payload.user_identity.model_dump()

    token_data = await powerbi.generate_embed_token(
        access_token,
        report["id"],
        [report.get("datasetId")],
        user_identity,
    )

    return success_payload(
        data={
            "reportId": report["id"],
            "reportName": report.get("name"),
            "embedUrl": report.get("embedUrl"),
            "embedToken": token_data.get("token"),
            "tokenId": token_data.get("tokenId"),
            "expiration": token_data.get("expiration"),
        },
        request_id=request_id_from_request(request),
    )
