from __future__ import annotations

from typing import Any, Optional, Protocol

from credgate.logging import get_logger
from credgate.service.sessions import SessionIssuer
from credgate.service.tokens import Clock, utc_clock
from credgate.storage.models import (
    PasswordResetToken,
    TwoFactorConfirmation,
    TwoFactorToken,
    User,
    VerificationToken,
)

logger = get_logger(__name__)


class IdentityStore(Protocol):
    def update_user(self, user_id: str, **updates: Any) -> Optional[User]:
        ...

    def confirm_two_factor(self, token_id: str, user_id: str) -> Optional[TwoFactorConfirmation]:
        ...

    def apply_email_verification(
        self, token_id: str, user_id: str, email: str, verified_at: Any
    ) -> Optional[User]:
        ...

    def apply_password_reset(
        self, token_id: str, user_id: str, password_hash: str
    ) -> Optional[User]:
        ...


class IdentityMutator:
    """Applies confirmed transitions to the user record and the live session.

    Each transition that consumes a token does so in the same store operation
    as the user write. A ``None`` return means another request consumed the
    token first.
    """

    def __init__(self, store: IdentityStore, sessions: SessionIssuer, *, clock: Clock = utc_clock) -> None:
        self.store = store
        self.sessions = sessions
        self.clock = clock

    def mark_email_verified(self, token: VerificationToken, user: User) -> Optional[User]:
        email_changed = token.email != user.email
        updated = self.store.apply_email_verification(
            token.id, user.id, token.email, self.clock()
        )
        if updated:
            logger.info("email_verified", user_id=user.id, email_changed=email_changed)
        return updated

    def confirm_two_factor(self, token: TwoFactorToken, user: User) -> Optional[TwoFactorConfirmation]:
        confirmation = self.store.confirm_two_factor(token.id, user.id)
        if confirmation:
            logger.info("two_factor_confirmed", user_id=user.id)
        return confirmation

    def rotate_password(
        self, token: PasswordResetToken, user: User, password_hash: str
    ) -> Optional[User]:
        updated = self.store.apply_password_reset(token.id, user.id, password_hash)
        if updated:
            logger.info("password_rotated", user_id=user.id)
        return updated

    def apply_settings(self, user_id: str, updates: dict[str, Any]) -> tuple[Optional[User], Optional[str]]:
        """Persist ``updates`` and mint a session carrying the merged fields."""
        updated = self.store.update_user(user_id, **updates)
        if not updated:
            return None, None
        token, _ = self.sessions.refresh(updated)
        logger.info(
            "settings_applied",
            user_id=user_id,
            fields=sorted(k for k in updates if k != "password_hash"),
            password_changed="password_hash" in updates,
        )
        return updated, token
