"""Stateless signed sessions and the sign-in completion hook.

A session is an HS256 JWT. Nothing about it is stored server side, so
"updating" a session always means minting a new token from the user record.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from credgate.config import Settings
from credgate.logging import get_logger
from credgate.service.credentials import CredentialVerifier
from credgate.service.tokens import Clock, utc_clock
from credgate.storage.models import LinkedAccount, TwoFactorConfirmation, User

logger = get_logger(__name__)


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_account_by_user_id(self, user_id: str) -> Optional[LinkedAccount]:
        ...

    def consume_two_factor_confirmation(self, user_id: str) -> Optional[TwoFactorConfirmation]:
        ...


class SignInError(Exception):
    """Sign-in refused by the session layer for a reason it does not classify."""

    code = "other"

    def __init__(self, message: str = "sign-in refused") -> None:
        super().__init__(message)
        self.message = message


class CredentialsSignin(SignInError):
    code = "invalid_credentials"


class CallbackError(SignInError):
    """Completion hook failed with a message meant for the user."""

    code = "callback_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class AccessDenied(SignInError):
    code = "access_denied"


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: str
    name: Optional[str]
    role: str
    two_factor_enabled: bool
    is_oauth: bool
    issued_at: int
    expires_at: int
    session_id: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "two_factor_enabled": self.two_factor_enabled,
            "is_oauth": self.is_oauth,
            "expires_at": self.expires_at,
        }


@dataclass(frozen=True)
class SessionGrant:
    token: str
    claims: SessionClaims
    redirect_to: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class SessionIssuer:
    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        verifier: CredentialVerifier,
        *,
        clock: Clock = utc_clock,
    ) -> None:
        self.store = store
        self.settings = settings
        self.verifier = verifier
        self.clock = clock

    # Credentials half ----------------------------------------------------------

    async def authorize(self, email: str, password: str) -> Optional[User]:
        """Return the user when the pair is valid, otherwise None."""
        user = self.store.get_user_by_email(email)
        if not await self.verifier.verify(user, password):
            return None
        return user

    # Completion hook ------------------------------------------------------------

    async def complete_sign_in(self, user_id: str, redirect_to: Optional[str] = None) -> SessionGrant:
        """Run the credentials completion checks and mint a session.

        Raises a ``SignInError`` subtype when the user may not sign in. The two
        factor confirmation is consumed here so the next sign-in needs a new code.
        """
        user = self.store.get_user(user_id)
        if not user:
            raise CredentialsSignin("user vanished before completion")
        if not user.is_verified:
            logger.warning("sign_in_denied_unverified", user_id=user.id)
            raise AccessDenied("email not verified")
        if user.two_factor_enabled:
            confirmation = self.store.consume_two_factor_confirmation(user.id)
            if confirmation is None:
                logger.warning("sign_in_denied_missing_2fa_confirmation", user_id=user.id)
                raise AccessDenied("two-factor confirmation missing")
        token, claims = self.mint(user)
        logger.info("session_issued", user_id=user.id, session_id=claims.session_id)
        return SessionGrant(token=token, claims=claims, redirect_to=self.resolve_redirect(redirect_to))

    def resolve_redirect(self, target: Optional[str]) -> str:
        if target and target.startswith("/") and not target.startswith("//") and "\\" not in target:
            return target
        return self.settings.default_login_redirect

    # Token encoding ----------------------------------------------------------------

    def mint(self, user: User) -> tuple[str, SessionClaims]:
        now: datetime = self.clock()
        expires = now + timedelta(minutes=self.settings.session_ttl_minutes)
        claims = SessionClaims(
            user_id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            two_factor_enabled=user.two_factor_enabled,
            is_oauth=self.store.get_account_by_user_id(user.id) is not None,
            issued_at=int(now.timestamp()),
            expires_at=int(expires.timestamp()),
            session_id=str(uuid.uuid4()),
        )
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": claims.user_id,
            "jti": claims.session_id,
            "iat": claims.issued_at,
            "exp": claims.expires_at,
            "email": claims.email,
            "name": claims.name,
            "role": claims.role,
            "two_factor_enabled": claims.two_factor_enabled,
            "is_oauth": claims.is_oauth,
        }
        return self._encode_jwt(payload), claims

    def refresh(self, user: User) -> tuple[str, SessionClaims]:
        """New session representation reflecting the persisted user record."""
        return self.mint(user)

    def _sign(self, signing_input: str) -> bytes:
        return hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_encode_segment(self._sign(signing_input))}"

    def decode(self, token: Optional[str]) -> Optional[SessionClaims]:
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("session_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("session_invalid_algorithm")
            return None
        expected_sig = _encode_segment(self._sign(f"{header_b64}.{payload_b64}"))
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("session_payload_decode_failed", error=str(exc))
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            return None
        if exp <= int(self.clock().timestamp()):
            return None
        try:
            return SessionClaims(
                user_id=str(payload["sub"]),
                email=str(payload["email"]),
                name=payload.get("name"),
                role=str(payload["role"]),
                two_factor_enabled=bool(payload.get("two_factor_enabled", False)),
                is_oauth=bool(payload.get("is_oauth", False)),
                issued_at=iat,
                expires_at=exp,
                session_id=str(payload.get("jti", "")),
            )
        except KeyError:
            return None
