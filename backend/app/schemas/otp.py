from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class SendOtpRequest(BaseModel):
    identity: str = Field(default="", max_length=320, validation_alias=AliasChoices("identity", "email"))
    purpose: str = Field(default="signin", validation_alias=AliasChoices("purpose", "type"))


class SendOtpResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    expires_in_seconds: int = Field(ge=1)
    debug_otp: str | None = Field(default=None, alias="_debug_otp")


class VerifyOtpRequest(BaseModel):
    # Clients posting the code as a JSON number still get the usual verify response.
    model_config = ConfigDict(coerce_numbers_to_str=True)

    identity: str = Field(default="", max_length=320, validation_alias=AliasChoices("identity", "email"))
    code: str = Field(default="", max_length=32, validation_alias=AliasChoices("code", "otp"))


class VerifyOtpResponse(BaseModel):
    success: bool
    verified: bool
    message: str
    error: str | None = None
    attempts_remaining: int | None = None
