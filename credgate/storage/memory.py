from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from credgate.logging import get_logger
from credgate.storage.errors import ConstraintViolation
from credgate.storage.models import (
    TOKEN_TYPES,
    LinkedAccount,
    OneTimeToken,
    TokenKind,
    TwoFactorConfirmation,
    User,
)

_USER_FIELDS = {
    "name",
    "email",
    "password_hash",
    "email_verified_at",
    "role",
    "two_factor_enabled",
}


class MemoryStore:
    """In-process store persisted to a JSON file under ``fs_root``.

    Every compound mutation runs under a single re-entrant lock, which gives
    the same all-or-nothing behaviour the Postgres store gets from transactions.
    """

    def __init__(self, fs_root: str = "/tmp/credgate") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.accounts: Dict[str, LinkedAccount] = {}
        self.tokens: Dict[TokenKind, Dict[str, OneTimeToken]] = {
            kind: {} for kind in TokenKind
        }
        self.confirmations: Dict[str, TwoFactorConfirmation] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # Users -----------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: str = "USER",
        two_factor_enabled: bool = False,
        email_verified_at: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            if self._find_user_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                password_hash=password_hash,
                role=role,
                two_factor_enabled=two_factor_enabled,
                email_verified_at=email_verified_at,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def _find_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._find_user_by_email(email)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def _apply_user_updates(self, user: User, updates: Dict[str, Any]) -> None:
        unknown = set(updates) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        new_email = updates.get("email")
        if new_email and new_email != user.email:
            holder = self._find_user_by_email(new_email)
            if holder and holder.id != user.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
        for key, value in updates.items():
            setattr(user, key, value)

    def update_user(self, user_id: str, **updates: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._apply_user_updates(user, updates)
            self._persist_state()
            return user

    # Linked provider accounts ------------------------------------------------

    def link_account(
        self,
        user_id: str,
        provider: str,
        provider_account_id: str,
        *,
        verified_at: datetime,
    ) -> LinkedAccount:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for account", {"user_id": user_id})
            for existing in self.accounts.values():
                if (
                    existing.provider == provider
                    and existing.provider_account_id == provider_account_id
                ):
                    if existing.user_id != user_id:
                        raise ConstraintViolation(
                            "provider account already linked",
                            {"provider": provider},
                        )
                    return existing
            account = LinkedAccount(
                id=str(uuid.uuid4()),
                user_id=user_id,
                provider=provider,
                provider_account_id=provider_account_id,
            )
            self.accounts[account.id] = account
            # Provider-vouched addresses count as verified
            if user.email_verified_at is None:
                user.email_verified_at = verified_at
            self._persist_state()
            return account

    def get_account_by_user_id(self, user_id: str) -> Optional[LinkedAccount]:
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.user_id == user_id), None
            )

    # One-time tokens ----------------------------------------------------------

    def replace_token(self, token: OneTimeToken) -> OneTimeToken:
        """Delete any token of the same kind and identity, then store ``token``."""
        with self._data_lock:
            bucket = self.tokens[token.kind]
            if any(
                t.token == token.token and t.identity_key != token.identity_key
                for t in bucket.values()
            ):
                raise ConstraintViolation("token value collision", {"kind": token.kind.value})
            for existing_id, existing in list(bucket.items()):
                if existing.identity_key == token.identity_key:
                    bucket.pop(existing_id, None)
            bucket[token.id] = token
            self._persist_state()
            return token

    def find_token_by_value(self, kind: TokenKind, value: str) -> Optional[OneTimeToken]:
        with self._data_lock:
            return next(
                (t for t in self.tokens[kind].values() if t.token == value), None
            )

    def find_token_by_email(self, kind: TokenKind, email: str) -> Optional[OneTimeToken]:
        with self._data_lock:
            return next(
                (
                    t
                    for t in self.tokens[kind].values()
                    if t.email == email and t.identity_key == f"email:{email}"
                ),
                None,
            )

    def find_token_by_user_id(self, kind: TokenKind, user_id: str) -> Optional[OneTimeToken]:
        with self._data_lock:
            return next(
                (t for t in self.tokens[kind].values() if t.user_id == user_id), None
            )

    def list_tokens(self, kind: TokenKind) -> List[OneTimeToken]:
        with self._data_lock:
            return list(self.tokens[kind].values())

    def _pop_token(self, kind: TokenKind, token_id: str) -> Optional[OneTimeToken]:
        return self.tokens[kind].pop(token_id, None)

    def purge_expired_tokens(self, now: datetime) -> int:
        with self._data_lock:
            purged = 0
            for bucket in self.tokens.values():
                for token_id, token in list(bucket.items()):
                    if token.is_expired(now):
                        bucket.pop(token_id, None)
                        purged += 1
            if purged:
                self._persist_state()
            return purged

    # Compound transitions ------------------------------------------------------

    def confirm_two_factor(
        self, token_id: str, user_id: str
    ) -> Optional[TwoFactorConfirmation]:
        with self._data_lock:
            if not self._pop_token(TokenKind.TWO_FACTOR, token_id):
                return None
            confirmation = TwoFactorConfirmation.new(user_id)
            self.confirmations[user_id] = confirmation
            self._persist_state()
            return confirmation

    def get_two_factor_confirmation(self, user_id: str) -> Optional[TwoFactorConfirmation]:
        with self._data_lock:
            return self.confirmations.get(user_id)

    def consume_two_factor_confirmation(
        self, user_id: str
    ) -> Optional[TwoFactorConfirmation]:
        with self._data_lock:
            confirmation = self.confirmations.pop(user_id, None)
            if confirmation:
                self._persist_state()
            return confirmation

    def apply_email_verification(
        self, token_id: str, user_id: str, email: str, verified_at: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or token_id not in self.tokens[TokenKind.VERIFICATION]:
                return None
            self._apply_user_updates(
                user, {"email": email, "email_verified_at": verified_at}
            )
            self._pop_token(TokenKind.VERIFICATION, token_id)
            self._persist_state()
            return user

    def apply_password_reset(
        self, token_id: str, user_id: str, password_hash: str
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not self._pop_token(TokenKind.PASSWORD_RESET, token_id):
                return None
            user.password_hash = password_hash
            self._persist_state()
            return user

    def close(self) -> None:
        return None

    # Persistence ---------------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "tokens": [
                self._serialize_token(t)
                for bucket in self.tokens.values()
                for t in bucket.values()
            ],
            "two_factor_confirmations": [
                {
                    "id": c.id,
                    "user_id": c.user_id,
                    "created_at": self._serialize_datetime(c.created_at),
                }
                for c in self.confirmations.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.tokens = {kind: {} for kind in TokenKind}
        for raw in data.get("tokens", []):
            token = self._deserialize_token(raw)
            self.tokens[token.kind][token.id] = token
        self.confirmations = {}
        for raw in data.get("two_factor_confirmations", []):
            self.confirmations[raw["user_id"]] = TwoFactorConfirmation(
                id=raw["id"],
                user_id=raw["user_id"],
                created_at=self._deserialize_datetime(raw["created_at"]),
            )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "email_verified_at": self._serialize_datetime(user.email_verified_at),
            "role": user.role,
            "two_factor_enabled": user.two_factor_enabled,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            password_hash=data.get("password_hash"),
            email_verified_at=self._deserialize_datetime(data.get("email_verified_at")),
            role=data.get("role", "USER"),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_account(self, account: LinkedAccount) -> dict:
        return {
            "id": account.id,
            "user_id": account.user_id,
            "provider": account.provider,
            "provider_account_id": account.provider_account_id,
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> LinkedAccount:
        return LinkedAccount(
            id=data["id"],
            user_id=data["user_id"],
            provider=data["provider"],
            provider_account_id=data["provider_account_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_token(self, token: OneTimeToken) -> dict:
        return {
            "id": token.id,
            "kind": token.kind.value,
            "token": token.token,
            "email": token.email,
            "user_id": token.user_id,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_token(self, data: dict) -> OneTimeToken:
        token_cls = TOKEN_TYPES[TokenKind(data["kind"])]
        return token_cls(
            id=data["id"],
            token=data["token"],
            email=data["email"],
            user_id=data.get("user_id"),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
