from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class IssueCodeRequest(BaseModel):
    recipient: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("recipient", "email")
    )


class VerifyCodeRequest(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    recipient: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("recipient", "email")
    )
    code: Optional[str] = Field(default=None, validation_alias=AliasChoices("code", "otp"))
