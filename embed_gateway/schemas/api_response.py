from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class APIResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    attempted_configurations: Optional[List[str]] = Field(
        default=None, alias="attemptedConfigurations"
    )
    suggestion: Optional[str] = None
    request_id: Optional[str] = Field(default=None, alias="requestId")


def success_payload(
    *,
    message: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    return APIResponse(
        success=True,
        message=message,
        request_id=request_id,
        **(data or {}),
    ).model_dump(by_alias=True, exclude_none=True)


def error_payload(
    *,
    error: str = "Request failed",
    error_code: Optional[str] = None,
    attempted_configurations: Optional[List[str]] = None,
    suggestion: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    return APIResponse(
        success=False,
        error=error,
        error_code=error_code,
        attempted_configurations=attempted_configurations,
        suggestion=suggestion,
        request_id=request_id,
    ).model_dump(by_alias=True, exclude_none=True)
