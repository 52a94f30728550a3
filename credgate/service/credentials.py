from __future__ import annotations

from typing import Optional

from credgate.service.passwords import PasswordHasher
from credgate.storage.models import User


class CredentialVerifier:
    """Checks a submitted password against a stored user record."""

    def __init__(self, hasher: PasswordHasher) -> None:
        self.hasher = hasher

    @staticmethod
    def accepts_password_login(user: Optional[User]) -> bool:
        # Federated-only accounts carry no hash and never pass this path
        return bool(user and user.password_hash)

    async def verify(self, user: Optional[User], password: str) -> bool:
        if not self.accepts_password_login(user):
            return False
        return await self.hasher.verify_async(password, user.password_hash)  # type: ignore[union-attr]
