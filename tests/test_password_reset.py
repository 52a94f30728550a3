"""Tests for requesting and completing a password reset."""

import pytest

from credgate.service.email import NotificationError
from credgate.service.outcomes import Messages, Reason, Status
from credgate.storage.models import TokenKind


async def _request(auth_service, notifier, email="user@example.com"):
    result = await auth_service.request_password_reset({"email": email})
    assert result.status is Status.SUCCESS
    return notifier.last("password_reset")[1]


class TestRequestReset:
    async def test_known_user_gets_link(self, auth_service, make_user, memory_store, notifier):
        make_user()
        result = await auth_service.request_password_reset({"email": "user@example.com"})

        assert result.message == Messages.RESET_SENT
        tokens = memory_store.list_tokens(TokenKind.PASSWORD_RESET)
        assert len(tokens) == 1
        assert notifier.last("password_reset") == ("user@example.com", tokens[0].token)

    async def test_unknown_user(self, auth_service, memory_store):
        result = await auth_service.request_password_reset({"email": "ghost@example.com"})
        assert result.reason is Reason.USER_NOT_FOUND
        assert memory_store.list_tokens(TokenKind.PASSWORD_RESET) == []

    async def test_invalid_email(self, auth_service):
        result = await auth_service.request_password_reset({"email": "nope"})
        assert result.reason is Reason.INVALID_INPUT

    async def test_delivery_failure_is_fatal(self, auth_service, make_user, notifier):
        make_user()
        notifier.fail = True
        with pytest.raises(NotificationError):
            await auth_service.request_password_reset({"email": "user@example.com"})


class TestCompleteReset:
    async def test_reset_changes_password(self, auth_service, make_user, notifier):
        make_user()
        token = await _request(auth_service, notifier)

        result = await auth_service.complete_password_reset(
            token, {"password": "brand-new", "confirm_password": "brand-new"}
        )

        assert result.message == Messages.PASSWORD_RESET
        old = await auth_service.login({"email": "user@example.com", "password": "secret1"})
        new = await auth_service.login({"email": "user@example.com", "password": "brand-new"})
        assert old.reason is Reason.INVALID_CREDENTIALS
        assert new.status is Status.SUCCESS

    async def test_token_is_consumed(self, auth_service, make_user, notifier):
        make_user()
        token = await _request(auth_service, notifier)
        values = {"password": "brand-new", "confirmPassword": "brand-new"}

        assert (await auth_service.complete_password_reset(token, values)).ok
        second = await auth_service.complete_password_reset(token, values)

        assert second.reason is Reason.INVALID_TOKEN
        assert second.message == Messages.INVALID_RESET

    async def test_missing_token(self, auth_service):
        result = await auth_service.complete_password_reset(
            None, {"password": "brand-new", "confirm_password": "brand-new"}
        )
        assert result.message == Messages.MISSING_RESET_TOKEN

    async def test_expired_token(self, auth_service, make_user, notifier, clock, memory_store):
        make_user()
        token = await _request(auth_service, notifier)
        clock.advance(hours=1)

        result = await auth_service.complete_password_reset(
            token, {"password": "brand-new", "confirm_password": "brand-new"}
        )

        assert result.reason is Reason.TOKEN_EXPIRED
        assert result.message == Messages.RESET_EXPIRED
        assert len(memory_store.list_tokens(TokenKind.PASSWORD_RESET)) == 1

    async def test_mismatched_confirmation(self, auth_service, make_user, notifier, memory_store):
        make_user()
        token = await _request(auth_service, notifier)

        result = await auth_service.complete_password_reset(
            token, {"password": "brand-new", "confirm_password": "brand-old"}
        )

        assert result.reason is Reason.INVALID_INPUT
        assert result.message == "Passwords do not match."
        assert len(memory_store.list_tokens(TokenKind.PASSWORD_RESET)) == 1

    async def test_short_password(self, auth_service, make_user, notifier):
        make_user()
        token = await _request(auth_service, notifier)
        result = await auth_service.complete_password_reset(
            token, {"password": "abc", "confirm_password": "abc"}
        )
        assert result.reason is Reason.INVALID_INPUT

    async def test_owner_deleted_after_issue(self, auth_service, notifier, memory_store):
        token = auth_service.tokens.issue_password_reset_token("gone@example.com")
        result = await auth_service.complete_password_reset(
            token.token, {"password": "brand-new", "confirm_password": "brand-new"}
        )
        assert result.reason is Reason.USER_NOT_FOUND
