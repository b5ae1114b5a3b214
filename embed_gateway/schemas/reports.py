from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UserIdentity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None
    username: Optional[str] = None
    roles: List[str] = Field(default_factory=list)


class ReportsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_identity: Optional[UserIdentity] = Field(default=None, alias="userIdentity")


class EmbedTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    report_id: Optional[str] = Field(default=None, alias="reportId")
    dataset_id: Optional[str] = Field(default=None, alias="datasetId")
    user_identity: Optional[UserIdentity] = Field(default=None, alias="userIdentity")
    bypass_rls: bool = Field(default=False, alias="bypassRLS")


class EmbedConfigRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_identity: Optional[UserIdentity] = Field(default=None, alias="userIdentity")
