"""Input schemas shared by the service layer and the HTTP routes."""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from credgate.storage.models import UserRole

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

MIN_PASSWORD_LENGTH = 6


def normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def first_error(exc: ValidationError) -> str:
    """Human-readable text of the first validation failure."""
    errors = exc.errors()
    if not errors:
        return "Invalid fields."
    message = errors[0].get("msg", "Invalid fields.")
    return message.removeprefix("Value error, ")


class _Form(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class LoginForm(_Form):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)
    code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("code")
    @classmethod
    def _blank_code_is_absent(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class RegisterForm(_Form):
    email: str
    name: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)


class ResetForm(_Form):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)


class NewPasswordForm(_Form):
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, max_length=1024)
    confirm_password: str = Field(
        ..., alias="confirmPassword", min_length=MIN_PASSWORD_LENGTH, max_length=1024
    )

    @model_validator(mode="after")
    def _passwords_match(self) -> "NewPasswordForm":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match.")
        return self


class SettingsForm(_Form):
    name: Optional[str] = Field(default=None, max_length=200)
    is_two_factor_enabled: Optional[bool] = Field(default=None, alias="isTwoFactorEnabled")
    role: Optional[UserRole] = None
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=1024)
    new_password: Optional[str] = Field(default=None, alias="newPassword", max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return normalize_email(value)

    @field_validator("name", "password", "new_password")
    @classmethod
    def _blank_is_absent(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        return value

    @field_validator("new_password")
    @classmethod
    def _new_password_length(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) < MIN_PASSWORD_LENGTH:
            raise ValueError(
                f"New password must be at least {MIN_PASSWORD_LENGTH} characters."
            )
        return value

    @model_validator(mode="after")
    def _password_pair(self) -> "SettingsForm":
        if self.password and not self.new_password:
            raise ValueError("New password is required.")
        if self.new_password and not self.password:
            raise ValueError("Password is required.")
        return self


def parse_form(form_cls: type[_Form], values: Any) -> tuple[Optional[_Form], Optional[str]]:
    """Validate ``values`` into ``form_cls`` without raising.

    Returns ``(form, None)`` on success and ``(None, message)`` otherwise.
    """
    if isinstance(values, form_cls):
        return values, None
    if isinstance(values, BaseModel):
        values = values.model_dump(by_alias=False)
    try:
        return form_cls.model_validate(values or {}), None
    except ValidationError as exc:
        return None, first_error(exc)
