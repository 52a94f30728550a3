"""Tests for the admin bootstrap script."""

from scripts.bootstrap_admin import bootstrap_admin, main, validate_password

from credgate.service.runtime import get_runtime


class TestValidatePassword:
    def test_strong_password(self):
        assert validate_password("SecurePassword123!")

    def test_short_or_simple_password(self):
        assert not validate_password("Short1!")
        assert not validate_password("alllowercaseletters")


class TestBootstrap:
    def test_creates_verified_admin(self):
        result = bootstrap_admin("Admin@Example.com", "SecurePassword123!")

        assert result["status"] == "created"
        user = get_runtime().store.get_user_by_email("admin@example.com")
        assert user.role == "ADMIN"
        assert user.is_verified

    def test_promotes_existing_user(self):
        store = get_runtime().store
        existing = store.create_user("someone@example.com", password_hash="h")

        result = bootstrap_admin("someone@example.com", None)

        assert result == {"user_id": existing.id, "email": "someone@example.com", "status": "promoted"}
        promoted = store.get_user(existing.id)
        assert promoted.role == "ADMIN"
        assert promoted.is_verified

    def test_links_provider_account(self):
        result = bootstrap_admin(
            "admin@example.com",
            "SecurePassword123!",
            provider="github",
            provider_account_id="4242",
        )
        account = get_runtime().store.get_account_by_user_id(result["user_id"])
        assert account.provider == "github"

    def test_dry_run_writes_nothing(self):
        result = bootstrap_admin("admin@example.com", "SecurePassword123!", dry_run=True)
        assert result["status"] == "dry_run"
        assert get_runtime().store.get_user_by_email("admin@example.com") is None

    def test_runtime_closed_after_dry_run(self, monkeypatch):
        runtime = get_runtime()
        closed = []
        monkeypatch.setattr(runtime, "close", lambda: closed.append(True))

        bootstrap_admin("admin@example.com", "SecurePassword123!", dry_run=True)

        assert closed == [True]

    def test_main_requires_password_for_new_admin(self, capsys):
        assert main(["--email", "new@example.com"]) == 1
        assert "password is required" in capsys.readouterr().out

    def test_main_rejects_weak_password(self):
        assert main(["--email", "new@example.com", "--password", "weak"]) == 1
