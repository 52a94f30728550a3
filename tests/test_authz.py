"""Tests for the role gate."""

import pytest

from credgate.service.authz import Decision, admin_action, authorize
from credgate.service.outcomes import Messages, Reason
from credgate.service.sessions import SessionClaims
from credgate.storage.models import UserRole


def _claims(role: str) -> SessionClaims:
    return SessionClaims(
        user_id="u1",
        email="a@example.com",
        name="A",
        role=role,
        two_factor_enabled=False,
        is_oauth=False,
        issued_at=0,
        expires_at=1,
        session_id="s1",
    )


class TestAuthorize:
    @pytest.mark.parametrize(
        "role,required,expected",
        [
            ("ADMIN", UserRole.ADMIN, Decision.ALLOWED),
            ("USER", UserRole.USER, Decision.ALLOWED),
            ("USER", UserRole.ADMIN, Decision.FORBIDDEN),
            # No hierarchy: admins are not implicitly users
            ("ADMIN", UserRole.USER, Decision.FORBIDDEN),
            (None, UserRole.ADMIN, Decision.FORBIDDEN),
            ("admin", "ADMIN", Decision.FORBIDDEN),
        ],
    )
    def test_exact_match(self, role, required, expected):
        assert authorize(role, required) is expected


class TestAdminAction:
    def test_admin_allowed(self):
        result = admin_action(_claims("ADMIN"))
        assert result.ok
        assert result.message == Messages.ALLOWED

    def test_user_forbidden(self):
        result = admin_action(_claims("USER"))
        assert result.reason is Reason.FORBIDDEN
        assert result.message == Messages.FORBIDDEN

    def test_anonymous_forbidden(self):
        assert admin_action(None).message == Messages.FORBIDDEN
