from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import ClassVar, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class TokenKind(str, Enum):
    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"
    TWO_FACTOR = "two_factor"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    password_hash: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    role: str = UserRole.USER.value
    two_factor_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class LinkedAccount:
    """A federated provider identity attached to a user."""

    id: str
    user_id: str
    provider: str
    provider_account_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OneTimeToken:
    """Single-use token addressed by its random value.

    Subclasses fix the kind; ``identity_key`` decides which prior token a new
    issue replaces.
    """

    kind: ClassVar[TokenKind]

    id: str
    token: str
    email: str
    expires_at: datetime
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        token: str,
        email: str,
        ttl: timedelta,
        *,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "OneTimeToken":
        issued_at = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            email=email,
            expires_at=issued_at + ttl,
            user_id=user_id,
            created_at=issued_at,
        )

    @property
    def identity_key(self) -> str:
        return f"email:{self.email}"

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class VerificationToken(OneTimeToken):
    kind: ClassVar[TokenKind] = TokenKind.VERIFICATION

    @property
    def identity_key(self) -> str:
        # Tokens minted for a known user replace each other regardless of address
        if self.user_id:
            return f"user:{self.user_id}"
        return f"email:{self.email}"


@dataclass
class PasswordResetToken(OneTimeToken):
    kind: ClassVar[TokenKind] = TokenKind.PASSWORD_RESET


@dataclass
class TwoFactorToken(OneTimeToken):
    kind: ClassVar[TokenKind] = TokenKind.TWO_FACTOR


TOKEN_TYPES: dict[TokenKind, type[OneTimeToken]] = {
    TokenKind.VERIFICATION: VerificationToken,
    TokenKind.PASSWORD_RESET: PasswordResetToken,
    TokenKind.TWO_FACTOR: TwoFactorToken,
}


@dataclass
class TwoFactorConfirmation:
    """Marker that a user passed the code challenge for the current sign-in."""

    id: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str) -> "TwoFactorConfirmation":
        return cls(id=str(uuid.uuid4()), user_id=user_id)
