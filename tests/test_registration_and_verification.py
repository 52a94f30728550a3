"""Tests for registration and email verification completion."""

import pytest

from credgate.service.outcomes import Messages, Reason, Status
from credgate.storage.models import TokenKind


class TestRegister:
    async def test_register_creates_unverified_user_and_sends_link(
        self, auth_service, memory_store, notifier, hasher
    ):
        result = await auth_service.register(
            {"email": "u@x.com", "name": "U", "password": "secret1"}
        )

        assert result.status is Status.SUCCESS
        assert result.message == Messages.REGISTERED
        user = memory_store.get_user_by_email("u@x.com")
        assert user.name == "U"
        assert user.role == "USER"
        assert user.email_verified_at is None
        assert hasher.verify("secret1", user.password_hash)
        tokens = memory_store.list_tokens(TokenKind.VERIFICATION)
        assert len(tokens) == 1
        assert notifier.last("verification") == ("u@x.com", tokens[0].token)

    async def test_duplicate_email_performs_no_write(self, auth_service, make_user, memory_store, notifier):
        existing = make_user("u@x.com")

        result = await auth_service.register(
            {"email": "u@x.com", "name": "Other", "password": "another1"}
        )

        assert result.reason is Reason.EMAIL_IN_USE
        assert result.message == Messages.EMAIL_IN_USE
        assert memory_store.get_user_by_email("u@x.com").password_hash == existing.password_hash
        assert memory_store.list_tokens(TokenKind.VERIFICATION) == []
        assert notifier.sent == []

    @pytest.mark.parametrize(
        "values",
        [
            {"email": "bad", "name": "U", "password": "secret1"},
            {"email": "u@x.com", "name": "", "password": "secret1"},
            {"email": "u@x.com", "name": "U", "password": "short"},
            {"email": "u@x.com", "name": "U"},
        ],
    )
    async def test_invalid_fields_rejected(self, auth_service, memory_store, values):
        result = await auth_service.register(values)
        assert result.reason is Reason.INVALID_INPUT
        assert memory_store.get_user_by_email("u@x.com") is None

    async def test_mail_failure_does_not_undo_registration(self, auth_service, memory_store, notifier):
        notifier.fail = True
        result = await auth_service.register(
            {"email": "u@x.com", "name": "U", "password": "secret1"}
        )
        assert result.status is Status.SUCCESS
        assert memory_store.get_user_by_email("u@x.com") is not None


class TestVerifyEmail:
    async def test_missing_or_unknown_token(self, auth_service):
        assert (await auth_service.verify_email(None)).reason is Reason.INVALID_TOKEN
        assert (await auth_service.verify_email("nope")).reason is Reason.INVALID_TOKEN

    async def test_expired_token_rejected(self, auth_service, make_user, clock):
        user = make_user(verified=False)
        token = auth_service.tokens.issue_verification_token(user.email, user_id=user.id)
        clock.advance(hours=24)

        result = await auth_service.verify_email(token.token)

        assert result.reason is Reason.TOKEN_EXPIRED
        assert result.message == Messages.VERIFICATION_EXPIRED

    async def test_email_keyed_token_verifies_by_address(self, auth_service, make_user, memory_store, clock):
        user = make_user(verified=False)
        token = auth_service.tokens.issue_verification_token(user.email)

        result = await auth_service.verify_email(token.token)

        assert result.message == Messages.EMAIL_VERIFIED
        assert memory_store.get_user(user.id).email_verified_at == clock()

    async def test_token_for_missing_user(self, auth_service):
        token = auth_service.tokens.issue_verification_token("ghost@example.com")
        result = await auth_service.verify_email(token.token)
        assert result.reason is Reason.USER_NOT_FOUND

    async def test_token_cannot_be_reused(self, auth_service, make_user):
        user = make_user(verified=False)
        token = auth_service.tokens.issue_verification_token(user.email, user_id=user.id)
        assert (await auth_service.verify_email(token.token)).ok
        assert (await auth_service.verify_email(token.token)).reason is Reason.INVALID_TOKEN

    async def test_pending_change_to_taken_address(self, auth_service, make_user):
        make_user("taken@example.com")
        user = make_user("me@example.com")
        token = auth_service.tokens.issue_verification_token("taken@example.com", user_id=user.id)

        result = await auth_service.verify_email(token.token)

        assert result.reason is Reason.EMAIL_IN_USE


class TestRegistrationScenario:
    async def test_register_verify_then_login(self, auth_service, memory_store, notifier):
        """Walks one account from registration to a verified sign-in."""
        registered = await auth_service.register(
            {"email": "u@x.com", "name": "U", "password": "secret1"}
        )
        assert registered.status is Status.SUCCESS
        user = memory_store.get_user_by_email("u@x.com")
        first = memory_store.list_tokens(TokenKind.VERIFICATION)
        assert len(first) == 1

        early = await auth_service.login({"email": "u@x.com", "password": "secret1"})
        assert early.status is Status.EMAIL_UNVERIFIED
        replaced = memory_store.list_tokens(TokenKind.VERIFICATION)
        assert len(replaced) == 1
        assert replaced[0].token != first[0].token

        verified = await auth_service.verify_email(notifier.last("verification")[1])
        assert verified.status is Status.SUCCESS
        assert memory_store.get_user(user.id).email_verified_at is not None
        assert memory_store.list_tokens(TokenKind.VERIFICATION) == []

        ok = await auth_service.login({"email": "u@x.com", "password": "secret1"})
        assert ok.status is Status.SUCCESS

        bad = await auth_service.login({"email": "u@x.com", "password": "wrong-one"})
        assert bad.reason is Reason.INVALID_CREDENTIALS
        assert all(not memory_store.list_tokens(kind) for kind in TokenKind)
