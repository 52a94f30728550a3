"""Tests for authenticated settings updates."""

import pytest

from credgate.service.outcomes import Messages, Reason, Status
from credgate.storage.models import TokenKind


def _session_for(auth_service, user):
    _, claims = auth_service.sessions.mint(user)
    return claims


class TestAccess:
    async def test_requires_session(self, auth_service):
        result = await auth_service.update_settings(None, {"name": "X"})
        assert result.reason is Reason.UNAUTHORIZED
        assert result.message == Messages.UNAUTHORIZED

    async def test_session_for_deleted_user(self, auth_service, make_user, memory_store):
        user = make_user()
        session = _session_for(auth_service, user)
        memory_store.users.pop(user.id)

        result = await auth_service.update_settings(session, {"name": "X"})
        assert result.reason is Reason.UNAUTHORIZED


class TestProfileFields:
    async def test_name_and_two_factor_update(self, auth_service, make_user, memory_store):
        user = make_user()
        session = _session_for(auth_service, user)

        result = await auth_service.update_settings(
            session, {"name": "Renamed", "isTwoFactorEnabled": True}
        )

        assert result.status is Status.SUCCESS
        assert result.message == Messages.SETTINGS_UPDATED
        stored = memory_store.get_user(user.id)
        assert stored.name == "Renamed"
        assert stored.two_factor_enabled is True
        refreshed = auth_service.read_session(result.session_token)
        assert refreshed.name == "Renamed"
        assert refreshed.two_factor_enabled is True

    async def test_omitted_fields_keep_stored_values(self, auth_service, make_user, memory_store):
        user = make_user(name="Keep", two_factor=True)
        session = _session_for(auth_service, user)

        await auth_service.update_settings(session, {})

        stored = memory_store.get_user(user.id)
        assert stored.name == "Keep"
        assert stored.two_factor_enabled is True
        assert stored.role == "USER"

    async def test_role_change_is_reflected_in_session(self, auth_service, make_user):
        user = make_user()
        session = _session_for(auth_service, user)
        result = await auth_service.update_settings(session, {"role": "ADMIN"})
        assert auth_service.read_session(result.session_token).role == "ADMIN"

    async def test_unknown_role_rejected(self, auth_service, make_user):
        user = make_user()
        result = await auth_service.update_settings(_session_for(auth_service, user), {"role": "ROOT"})
        assert result.reason is Reason.INVALID_INPUT


class TestPasswordChange:
    async def test_password_change_with_correct_current(self, auth_service, make_user, hasher, memory_store):
        user = make_user()
        session = _session_for(auth_service, user)

        result = await auth_service.update_settings(
            session, {"password": "secret1", "newPassword": "secret2"}
        )

        assert result.ok
        assert hasher.verify("secret2", memory_store.get_user(user.id).password_hash)

    async def test_wrong_current_password(self, auth_service, make_user, memory_store):
        user = make_user()
        session = _session_for(auth_service, user)

        result = await auth_service.update_settings(
            session, {"password": "nope-nope", "newPassword": "secret2", "name": "Changed"}
        )

        assert result.reason is Reason.INCORRECT_PASSWORD
        assert result.message == Messages.CURRENT_PASSWORD_MISMATCH
        assert memory_store.get_user(user.id).name == "User"

    @pytest.mark.parametrize(
        "values,message",
        [
            ({"password": "secret1"}, "New password is required."),
            ({"newPassword": "secret2"}, "Password is required."),
        ],
    )
    async def test_pair_required(self, auth_service, make_user, values, message):
        user = make_user()
        result = await auth_service.update_settings(_session_for(auth_service, user), values)
        assert result.reason is Reason.INVALID_INPUT
        assert result.message == message


class TestEmailChange:
    async def test_changed_email_only_sends_verification(
        self, auth_service, make_user, memory_store, notifier
    ):
        user = make_user()
        session = _session_for(auth_service, user)

        result = await auth_service.update_settings(
            session, {"email": "new@example.com", "name": "Changed", "role": "ADMIN"}
        )

        assert result.status is Status.SUCCESS
        assert result.message == Messages.VERIFICATION_SENT
        assert result.session_token is None
        stored = memory_store.get_user(user.id)
        assert stored.email == "user@example.com"
        assert stored.name == "User"
        assert stored.role == "USER"
        token = memory_store.find_token_by_user_id(TokenKind.VERIFICATION, user.id)
        assert token.email == "new@example.com"
        assert notifier.last("verification") == ("new@example.com", token.token)

    async def test_verifying_the_link_moves_the_address(self, auth_service, make_user, memory_store, notifier):
        user = make_user()
        await auth_service.update_settings(_session_for(auth_service, user), {"email": "new@example.com"})

        result = await auth_service.verify_email(notifier.last("verification")[1])

        assert result.ok
        assert memory_store.get_user(user.id).email == "new@example.com"

    async def test_taken_address(self, auth_service, make_user, notifier):
        make_user("taken@example.com")
        user = make_user()
        result = await auth_service.update_settings(
            _session_for(auth_service, user), {"email": "taken@example.com"}
        )
        assert result.reason is Reason.EMAIL_IN_USE
        assert result.message == Messages.SETTINGS_EMAIL_IN_USE
        assert notifier.sent == []

    async def test_unchanged_email_applies_other_fields(self, auth_service, make_user, memory_store):
        user = make_user()
        await auth_service.update_settings(
            _session_for(auth_service, user), {"email": "user@example.com", "name": "Changed"}
        )
        assert memory_store.get_user(user.id).name == "Changed"


class TestFederatedIdentity:
    async def test_only_name_and_role_apply(self, auth_service, make_user, memory_store, clock, notifier):
        user = make_user()
        memory_store.link_account(user.id, "github", "42", verified_at=clock())
        session = _session_for(auth_service, user)
        assert session.is_oauth is True

        result = await auth_service.update_settings(
            session,
            {
                "name": "Fed",
                "role": "ADMIN",
                "email": "elsewhere@example.com",
                "password": "secret1",
                "newPassword": "secret2",
                "isTwoFactorEnabled": True,
            },
        )

        assert result.message == Messages.SETTINGS_UPDATED
        stored = memory_store.get_user(user.id)
        assert (stored.name, stored.role) == ("Fed", "ADMIN")
        assert stored.email == "user@example.com"
        assert stored.two_factor_enabled is False
        assert notifier.sent == []
