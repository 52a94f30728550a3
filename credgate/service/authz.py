from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from credgate.logging import get_logger
from credgate.service.outcomes import AuthResult, Messages, Reason
from credgate.service.sessions import SessionClaims
from credgate.storage.models import UserRole

logger = get_logger(__name__)


class Decision(str, Enum):
    ALLOWED = "allowed"
    FORBIDDEN = "forbidden"


def authorize(session_role: Optional[str], required_role: Union[UserRole, str]) -> Decision:
    """Exact role match; there is no role hierarchy."""
    required = required_role.value if isinstance(required_role, UserRole) else required_role
    if session_role is not None and session_role == required:
        return Decision.ALLOWED
    return Decision.FORBIDDEN


def admin_action(session: Optional[SessionClaims]) -> AuthResult:
    role = session.role if session else None
    if authorize(role, UserRole.ADMIN) is Decision.ALLOWED:
        return AuthResult.success(Messages.ALLOWED)
    logger.info("admin_action_forbidden", user_id=session.user_id if session else None)
    return AuthResult.rejected(Reason.FORBIDDEN, Messages.FORBIDDEN)
