"""Discriminated results returned by every authentication operation.

Expected failures are values, never exceptions. Each branch maps to exactly
one message from the closed set below so callers can render it verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Status(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TWO_FACTOR = "two_factor"
    EMAIL_UNVERIFIED = "email_unverified"


class Reason(str, Enum):
    INVALID_INPUT = "invalid_input"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_CODE = "invalid_code"
    CODE_EXPIRED = "code_expired"
    EMAIL_IN_USE = "email_in_use"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    USER_NOT_FOUND = "user_not_found"
    INCORRECT_PASSWORD = "incorrect_password"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    CALLBACK_ERROR = "callback_error"
    UNEXPECTED = "unexpected"


class Messages:
    INVALID_CREDENTIALS = (
        "Invalid credentials. Please check your email and password and try again."
    )
    VERIFICATION_SENT = "Check your inbox for verification link."
    TWO_FACTOR_SENT = (
        "A two-factor authentication code has been sent to your email. "
        "Please enter the code to continue."
    )
    INVALID_CODE = (
        "Invalid two-factor authentication code. Please check your code and try again."
    )
    CODE_EXPIRED = (
        "The two-factor authentication code has expired. "
        "Please request a new code and try logging in again."
    )
    LOGIN_SUCCESS = "Logged in successfully."
    UNEXPECTED = "Something went wrong. Please try again later."

    EMAIL_IN_USE = "Email address is already in use. Please use a different email or login."
    REGISTERED = (
        "User registration successful. Check your email for the verification link."
    )

    INVALID_VERIFICATION = (
        "Invalid verification link. Please request a new link and try again."
    )
    VERIFICATION_EXPIRED = (
        "The verification link has expired. Please request a new link and try again."
    )
    VERIFICATION_USER_MISSING = (
        "User not found or invalid email address associated with the verification link."
    )
    EMAIL_VERIFIED = "Email verified successfully! You can now log in to your account."

    MISSING_RESET_TOKEN = "Missing token. Please request a new link and try again."
    INVALID_RESET = "Invalid request. Please request a new link and try again."
    RESET_EXPIRED = "The reset link has expired. Please request a new link and try again."
    RESET_SENT = "Password reset email sent."
    USER_NOT_FOUND = "User not found."
    PASSWORD_RESET = (
        "Your password has been successfully reset. You can now log in with your new password."
    )

    UNAUTHORIZED = "Unauthorized request. Please log in again."
    SETTINGS_EMAIL_IN_USE = "Email already in use."
    CURRENT_PASSWORD_MISMATCH = "Current password does not match."
    SETTINGS_UPDATED = "Settings update successful."

    ALLOWED = "Allowed Action"
    FORBIDDEN = "Forbidden Action"


@dataclass(frozen=True)
class AuthResult:
    status: Status
    message: str
    reason: Optional[Reason] = None
    redirect_to: Optional[str] = None
    session_token: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not Status.ERROR

    @classmethod
    def success(
        cls,
        message: str,
        *,
        redirect_to: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> "AuthResult":
        return cls(
            Status.SUCCESS,
            message,
            redirect_to=redirect_to,
            session_token=session_token,
        )

    @classmethod
    def rejected(cls, reason: Reason, message: str) -> "AuthResult":
        return cls(Status.ERROR, message, reason=reason)

    @classmethod
    def two_factor_required(cls) -> "AuthResult":
        return cls(Status.TWO_FACTOR, Messages.TWO_FACTOR_SENT)

    @classmethod
    def email_unverified(cls) -> "AuthResult":
        return cls(Status.EMAIL_UNVERIFIED, Messages.VERIFICATION_SENT)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "redirect_to": self.redirect_to,
        }
