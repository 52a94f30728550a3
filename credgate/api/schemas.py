from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from credgate.service.outcomes import AuthResult
from credgate.service.sessions import SessionClaims

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
    "service_unavailable",
}


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Request bodies stay permissive: shape checks belong to the service so that
# malformed input comes back as an invalid_input result, not a 422.


class _Body(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class LoginRequest(_Body):
    email: str = ""
    password: str = ""
    code: Optional[str] = None
    redirect_to: Optional[str] = Field(default=None, alias="callbackUrl", max_length=2048)


class RegisterRequest(_Body):
    email: str = ""
    name: str = ""
    password: str = ""


class VerifyEmailRequest(_Body):
    token: Optional[str] = Field(default=None, max_length=256)


class ResetRequest(_Body):
    email: str = ""


class NewPasswordRequest(_Body):
    token: Optional[str] = Field(default=None, max_length=256)
    password: str = ""
    confirm_password: str = Field(default="", alias="confirmPassword")


class SettingsRequest(_Body):
    name: Optional[str] = None
    is_two_factor_enabled: Optional[bool] = Field(default=None, alias="isTwoFactorEnabled")
    role: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    new_password: Optional[str] = Field(default=None, alias="newPassword")


class ActionResponse(BaseModel):
    status: str
    reason: Optional[str] = None
    message: str
    redirect_to: Optional[str] = None

    @classmethod
    def from_result(cls, result: AuthResult) -> "ActionResponse":
        return cls(**result.as_dict())


class SessionResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    role: str
    two_factor_enabled: bool
    is_oauth: bool
    expires_at: int

    @classmethod
    def from_claims(cls, claims: SessionClaims) -> "SessionResponse":
        return cls(**claims.as_dict())
