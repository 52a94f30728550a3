from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from credgate.config import Settings
from credgate.logging import get_logger
from credgate.service.errors import UpstreamError
from credgate.storage.errors import ConstraintViolation
from credgate.storage.models import (
    OneTimeToken,
    PasswordResetToken,
    TokenKind,
    TwoFactorToken,
    VerificationToken,
)

logger = get_logger(__name__)

TWO_FACTOR_CODE_MIN = 100_000
TWO_FACTOR_CODE_MAX = 999_999

Clock = Callable[[], datetime]


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


class TokenStore(Protocol):
    def replace_token(self, token: OneTimeToken) -> OneTimeToken:
        ...

    def find_token_by_value(self, kind: TokenKind, value: str) -> Optional[OneTimeToken]:
        ...

    def find_token_by_email(self, kind: TokenKind, email: str) -> Optional[OneTimeToken]:
        ...

    def find_token_by_user_id(self, kind: TokenKind, user_id: str) -> Optional[OneTimeToken]:
        ...

    def purge_expired_tokens(self, now: datetime) -> int:
        ...


def generate_opaque_token() -> str:
    return str(uuid.uuid4())


def generate_two_factor_code() -> str:
    return str(secrets.randbelow(TWO_FACTOR_CODE_MAX - TWO_FACTOR_CODE_MIN + 1) + TWO_FACTOR_CODE_MIN)


class TokenIssuer:
    """Mints one-time tokens, replacing any prior token for the same identity.

    Delivery is left to the caller so issuance and notification can fail
    independently.
    """

    # A fresh random value that collides with a live one is retried this often
    _MAX_COLLISION_RETRIES = 3

    def __init__(self, store: TokenStore, settings: Settings, *, clock: Clock = utc_clock) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock

    def _issue(
        self,
        token_cls: type[OneTimeToken],
        email: str,
        ttl: timedelta,
        generator: Callable[[], str],
        *,
        user_id: Optional[str] = None,
    ) -> OneTimeToken:
        for attempt in range(self._MAX_COLLISION_RETRIES):
            token = token_cls.new(generator(), email, ttl, user_id=user_id, now=self.clock())
            try:
                stored = self.store.replace_token(token)
            except ConstraintViolation:
                logger.warning(
                    "token_value_collision", kind=token_cls.kind.value, attempt=attempt
                )
                continue
            logger.info(
                "token_issued",
                kind=stored.kind.value,
                token_id=stored.id,
                user_id=user_id,
                expires_at=stored.expires_at.isoformat(),
            )
            return stored
        raise UpstreamError(f"unable to issue a unique {token_cls.kind.value} token")

    def issue_verification_token(
        self, email: str, *, user_id: Optional[str] = None
    ) -> VerificationToken:
        if user_id:
            ttl = timedelta(minutes=self.settings.user_verification_token_ttl_minutes)
        else:
            ttl = timedelta(minutes=self.settings.verification_token_ttl_minutes)
        return self._issue(  # type: ignore[return-value]
            VerificationToken, email, ttl, generate_opaque_token, user_id=user_id
        )

    def issue_password_reset_token(self, email: str) -> PasswordResetToken:
        ttl = timedelta(minutes=self.settings.password_reset_token_ttl_minutes)
        return self._issue(PasswordResetToken, email, ttl, generate_opaque_token)  # type: ignore[return-value]

    def issue_two_factor_token(self, email: str) -> TwoFactorToken:
        ttl = timedelta(minutes=self.settings.two_factor_token_ttl_minutes)
        return self._issue(TwoFactorToken, email, ttl, generate_two_factor_code)  # type: ignore[return-value]

    def issue(self, kind: TokenKind, identity: str, *, email: Optional[str] = None) -> OneTimeToken:
        """Generic entry point keyed by kind.

        ``identity`` is the email for reset and two-factor tokens. For
        verification tokens it is the user id when ``email`` is also given,
        otherwise the email itself.
        """
        if kind is TokenKind.VERIFICATION:
            if email:
                return self.issue_verification_token(email, user_id=identity)
            return self.issue_verification_token(identity)
        if kind is TokenKind.PASSWORD_RESET:
            return self.issue_password_reset_token(identity)
        return self.issue_two_factor_token(identity)

    def purge_expired(self) -> int:
        purged = self.store.purge_expired_tokens(self.clock())
        if purged:
            logger.info("expired_tokens_purged", count=purged)
        return purged
