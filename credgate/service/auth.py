from __future__ import annotations

import hmac
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

from pydantic import BaseModel

from credgate.config import Settings
from credgate.forms import (
    LoginForm,
    NewPasswordForm,
    RegisterForm,
    ResetForm,
    SettingsForm,
    parse_form,
)
from credgate.logging import get_logger
from credgate.service.credentials import CredentialVerifier
from credgate.service.email import NotificationError
from credgate.service.identity import IdentityMutator
from credgate.service.outcomes import AuthResult, Messages, Reason
from credgate.service.passwords import PasswordHasher
from credgate.service.sessions import (
    CallbackError,
    CredentialsSignin,
    SessionClaims,
    SessionIssuer,
    SignInError,
)
from credgate.service.tokens import Clock, TokenIssuer, utc_clock
from credgate.storage.errors import ConstraintViolation
from credgate.storage.models import (
    LinkedAccount,
    OneTimeToken,
    TokenKind,
    TwoFactorConfirmation,
    User,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(self, email: str, **fields: Any) -> User:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def update_user(self, user_id: str, **updates: Any) -> Optional[User]:
        ...

    def get_account_by_user_id(self, user_id: str) -> Optional[LinkedAccount]:
        ...

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

    def confirm_two_factor(self, token_id: str, user_id: str) -> Optional[TwoFactorConfirmation]:
        ...

    def consume_two_factor_confirmation(self, user_id: str) -> Optional[TwoFactorConfirmation]:
        ...

    def apply_email_verification(
        self, token_id: str, user_id: str, email: str, verified_at: datetime
    ) -> Optional[User]:
        ...

    def apply_password_reset(
        self, token_id: str, user_id: str, password_hash: str
    ) -> Optional[User]:
        ...


class Notifier(Protocol):
    async def send_verification_async(self, to_email: str, token: str) -> None:
        ...

    async def send_password_reset_async(self, to_email: str, token: str) -> None:
        ...

    async def send_two_factor_code_async(self, to_email: str, token: str) -> None:
        ...


def _as_values(values: Any) -> dict[str, Any]:
    if values is None:
        return {}
    if isinstance(values, BaseModel):
        return values.model_dump(by_alias=False)
    if isinstance(values, Mapping):
        return dict(values)
    raise TypeError(f"unsupported input type: {type(values).__name__}")


class AuthService:
    """Credential login, registration, verification, reset and settings flows.

    Every public operation returns an ``AuthResult``. Store outages and fatal
    notification failures propagate as exceptions for the outermost boundary
    to turn into a generic retry-later response.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        notifier: Notifier,
        hasher: Optional[PasswordHasher] = None,
        clock: Clock = utc_clock,
    ) -> None:
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self.clock = clock
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.tokens = TokenIssuer(store, settings, clock=clock)
        self.verifier = CredentialVerifier(self.hasher)
        self.sessions = SessionIssuer(store, settings, self.verifier, clock=clock)
        self.identity = IdentityMutator(store, self.sessions, clock=clock)
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock()

    # Login ----------------------------------------------------------------------

    async def login(
        self,
        credentials: Any,
        code: Optional[str] = None,
        *,
        redirect_to: Optional[str] = None,
    ) -> AuthResult:
        """Run one sign-in attempt.

        Ordering matters: an unverified address short-circuits before the two
        factor gate, and neither gate checks the password. The password is
        checked last on every path that can reach a session.
        """
        values = _as_values(credentials)
        if code is not None:
            values["code"] = code
        form, error = parse_form(LoginForm, values)
        if form is None:
            return AuthResult.rejected(Reason.INVALID_INPUT, error or "Invalid fields.")

        user = self.store.get_user_by_email(form.email)
        if user is None or not self.verifier.accepts_password_login(user):
            self.logger.info("login_rejected", reason="unknown_or_passwordless")
            return AuthResult.rejected(Reason.INVALID_CREDENTIALS, Messages.INVALID_CREDENTIALS)

        if not user.is_verified:
            token = self.tokens.issue_verification_token(user.email, user_id=user.id)
            await self.notifier.send_verification_async(token.email, token.token)
            self.logger.info("login_email_unverified", user_id=user.id)
            return AuthResult.email_unverified()

        if user.two_factor_enabled:
            if not form.code:
                token = self.tokens.issue_two_factor_token(user.email)
                await self.notifier.send_two_factor_code_async(token.email, token.token)
                self.logger.info("login_two_factor_required", user_id=user.id)
                return AuthResult.two_factor_required()
            rejection = self._check_two_factor_code(user, form.code)
            if rejection:
                return rejection

        authorized = await self.sessions.authorize(form.email, form.password)
        if not authorized:
            self.logger.info("login_rejected", user_id=user.id, reason="password_mismatch")
            return AuthResult.rejected(Reason.INVALID_CREDENTIALS, Messages.INVALID_CREDENTIALS)

        try:
            grant = await self.sessions.complete_sign_in(authorized.id, redirect_to)
        except CredentialsSignin:
            return AuthResult.rejected(Reason.INVALID_CREDENTIALS, Messages.INVALID_CREDENTIALS)
        except CallbackError as exc:
            return AuthResult.rejected(Reason.CALLBACK_ERROR, exc.detail)
        except SignInError as exc:
            self.logger.warning("login_sign_in_refused", user_id=user.id, failure=exc.code)
            return AuthResult.rejected(Reason.UNEXPECTED, Messages.UNEXPECTED)

        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult.success(
            Messages.LOGIN_SUCCESS,
            redirect_to=grant.redirect_to,
            session_token=grant.token,
        )

    def _check_two_factor_code(self, user: User, code: str) -> Optional[AuthResult]:
        token = self.store.find_token_by_email(TokenKind.TWO_FACTOR, user.email)
        if not token or not hmac.compare_digest(token.token.encode(), code.encode()):
            self.logger.info("login_two_factor_invalid", user_id=user.id)
            return AuthResult.rejected(Reason.INVALID_CODE, Messages.INVALID_CODE)
        if token.is_expired(self._now()):
            self.logger.info("login_two_factor_expired", user_id=user.id)
            return AuthResult.rejected(Reason.CODE_EXPIRED, Messages.CODE_EXPIRED)
        if self.identity.confirm_two_factor(token, user) is None:
            # Lost the race to a concurrent attempt presenting the same code
            return AuthResult.rejected(Reason.INVALID_CODE, Messages.INVALID_CODE)
        return None

    # Registration and verification ---------------------------------------------------

    async def register(self, values: Any) -> AuthResult:
        form, error = parse_form(RegisterForm, _as_values(values))
        if form is None:
            return AuthResult.rejected(Reason.INVALID_INPUT, error or "Invalid fields.")

        if self.store.get_user_by_email(form.email):
            return AuthResult.rejected(Reason.EMAIL_IN_USE, Messages.EMAIL_IN_USE)

        password_hash = await self.hasher.hash_async(form.password)
        try:
            user = self.store.create_user(
                form.email, name=form.name, password_hash=password_hash
            )
        except ConstraintViolation:
            return AuthResult.rejected(Reason.EMAIL_IN_USE, Messages.EMAIL_IN_USE)

        token = self.tokens.issue_verification_token(user.email, user_id=user.id)
        try:
            await self.notifier.send_verification_async(token.email, token.token)
        except NotificationError as exc:
            self.logger.error(
                "registration_verification_email_failed", user_id=user.id, error=str(exc)
            )
        self.logger.info("user_registered", user_id=user.id)
        return AuthResult.success(Messages.REGISTERED)

    async def verify_email(self, token_value: Optional[str]) -> AuthResult:
        if not token_value:
            return AuthResult.rejected(Reason.INVALID_TOKEN, Messages.INVALID_VERIFICATION)
        token = self.store.find_token_by_value(TokenKind.VERIFICATION, token_value)
        if not token:
            return AuthResult.rejected(Reason.INVALID_TOKEN, Messages.INVALID_VERIFICATION)
        if token.is_expired(self._now()):
            return AuthResult.rejected(Reason.TOKEN_EXPIRED, Messages.VERIFICATION_EXPIRED)

        if token.user_id:
            user = self.store.get_user(token.user_id)
        else:
            user = self.store.get_user_by_email(token.email)
        if not user:
            return AuthResult.rejected(Reason.USER_NOT_FOUND, Messages.VERIFICATION_USER_MISSING)

        try:
            updated = self.identity.mark_email_verified(token, user)  # type: ignore[arg-type]
        except ConstraintViolation:
            return AuthResult.rejected(Reason.EMAIL_IN_USE, Messages.SETTINGS_EMAIL_IN_USE)
        if updated is None:
            return AuthResult.rejected(Reason.INVALID_TOKEN, Messages.INVALID_VERIFICATION)
        return AuthResult.success(Messages.EMAIL_VERIFIED)

    # Password reset --------------------------------------------------------------------

    async def request_password_reset(self, values: Any) -> AuthResult:
        form, error = parse_form(ResetForm, _as_values(values))
        if form is None:
            return AuthResult.rejected(Reason.INVALID_INPUT, error or "Invalid email.")
        user = self.store.get_user_by_email(form.email)
        if not user:
            return AuthResult.rejected(Reason.USER_NOT_FOUND, Messages.USER_NOT_FOUND)

        token = self.tokens.issue_password_reset_token(user.email)
        await self.notifier.send_password_reset_async(token.email, token.token)
        self.logger.info("password_reset_requested", user_id=user.id)
        return AuthResult.success(Messages.RESET_SENT)

    async def complete_password_reset(self, token_value: Optional[str], values: Any) -> AuthResult:
        if not token_value:
            return AuthResult.rejected(Reason.INVALID_TOKEN, Messages.MISSING_RESET_TOKEN)
        form, error = parse_form(NewPasswordForm, _as_values(values))
        if form is None:
            return AuthResult.rejected(Reason.INVALID_INPUT, error or "Invalid fields.")

        token = self.store.find_token_by_value(TokenKind.PASSWORD_RESET, token_value)
        if not token:
            return AuthResult.rejected(Reason.INVALID_TOKEN, Messages.INVALID_RESET)
        if token.is_expired(self._now()):
            return AuthResult.rejected(Reason.TOKEN_EXPIRED, Messages.RESET_EXPIRED)
        user = self.store.get_user_by_email(token.email)
        if not user:
            return AuthResult.rejected(Reason.USER_NOT_FOUND, Messages.USER_NOT_FOUND)

        password_hash = await self.hasher.hash_async(form.password)
        if self.identity.rotate_password(token, user, password_hash) is None:  # type: ignore[arg-type]
            return AuthResult.rejected(Reason.INVALID_TOKEN, Messages.INVALID_RESET)
        return AuthResult.success(Messages.PASSWORD_RESET)

    # Settings ----------------------------------------------------------------------------

    async def update_settings(self, session: Optional[SessionClaims], values: Any) -> AuthResult:
        """Apply a settings change for the caller identified by ``session``.

        A changed email suspends every other field in the same request: only
        the re-verification link goes out. Federated identities may change
        just their name and role.
        """
        if session is None:
            return AuthResult.rejected(Reason.UNAUTHORIZED, Messages.UNAUTHORIZED)
        db_user = self.store.get_user(session.user_id)
        if not db_user:
            return AuthResult.rejected(Reason.UNAUTHORIZED, Messages.UNAUTHORIZED)

        form, error = parse_form(SettingsForm, _as_values(values))
        if form is None:
            return AuthResult.rejected(Reason.INVALID_INPUT, error or "Invalid fields.")

        role = form.role.value if form.role else db_user.role
        updates: dict[str, Any]
        if session.is_oauth:
            updates = {"name": form.name or db_user.name, "role": role}
        elif form.email and form.email != session.email:
            return await self._begin_email_change(db_user, form.email)
        else:
            updates = {}
            if form.password and form.new_password and db_user.password_hash:
                if not await self.hasher.verify_async(form.password, db_user.password_hash):
                    return AuthResult.rejected(
                        Reason.INCORRECT_PASSWORD, Messages.CURRENT_PASSWORD_MISMATCH
                    )
                updates["password_hash"] = await self.hasher.hash_async(form.new_password)
            updates["name"] = form.name or db_user.name
            updates["role"] = role
            updates["two_factor_enabled"] = (
                form.is_two_factor_enabled
                if form.is_two_factor_enabled is not None
                else db_user.two_factor_enabled
            )

        updated, session_token = self.identity.apply_settings(db_user.id, updates)
        if not updated:
            return AuthResult.rejected(Reason.UNAUTHORIZED, Messages.UNAUTHORIZED)
        return AuthResult.success(Messages.SETTINGS_UPDATED, session_token=session_token)

    async def _begin_email_change(self, user: User, new_email: str) -> AuthResult:
        holder = self.store.get_user_by_email(new_email)
        if holder and holder.id != user.id:
            return AuthResult.rejected(Reason.EMAIL_IN_USE, Messages.SETTINGS_EMAIL_IN_USE)
        token = self.tokens.issue_verification_token(new_email, user_id=user.id)
        await self.notifier.send_verification_async(token.email, token.token)
        self.logger.info("settings_email_change_pending", user_id=user.id)
        return AuthResult.success(Messages.VERIFICATION_SENT)

    # Session helpers ---------------------------------------------------------------------

    def read_session(self, token: Optional[str]) -> Optional[SessionClaims]:
        return self.sessions.decode(token)

    def purge_expired_tokens(self) -> int:
        return self.tokens.purge_expired()
