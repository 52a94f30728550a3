import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="credgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
# Cheapest argon2 parameters the library accepts; keeps the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from credgate.config import Settings  # noqa: E402
from credgate.service.auth import AuthService  # noqa: E402
from credgate.service.email import NotificationError  # noqa: E402
from credgate.service.passwords import PasswordHasher  # noqa: E402
from credgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from credgate.storage.memory import MemoryStore  # noqa: E402


def _clear_shared_state() -> None:
    state_file = Path(os.environ["SHARED_FS_ROOT"]) / "state" / "memory_store.json"
    if state_file.exists():
        state_file.unlink()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    _clear_shared_state()
    yield
    reset_runtime_for_tests()
    _clear_shared_state()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Captures outgoing messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def _record(self, kind: str, to_email: str, token: str) -> None:
        if self.fail:
            raise NotificationError("relay down")
        self.sent.append((kind, to_email, token))

    async def send_verification_async(self, to_email: str, token: str) -> None:
        self._record("verification", to_email, token)

    async def send_password_reset_async(self, to_email: str, token: str) -> None:
        self._record("password_reset", to_email, token)

    async def send_two_factor_code_async(self, to_email: str, token: str) -> None:
        self._record("two_factor", to_email, token)

    def last(self, kind: str) -> tuple[str, str]:
        for sent_kind, to_email, token in reversed(self.sent):
            if sent_kind == kind:
                return to_email, token
        raise AssertionError(f"no {kind} message was sent")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="unit-test-secret-key-with-enough-length-0123456789",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        session_cookie_secure=False,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def clock():
    return FrozenClock(datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def auth_service(memory_store, settings, notifier, hasher, clock):
    return AuthService(
        memory_store, settings, notifier=notifier, hasher=hasher, clock=clock
    )


@pytest.fixture
def make_user(memory_store, hasher, clock):
    """Factory for users stored with a real password hash."""

    def _make(
        email: str = "user@example.com",
        password: str = "secret1",
        *,
        name: str = "User",
        verified: bool = True,
        two_factor: bool = False,
        role: str = "USER",
    ):
        return memory_store.create_user(
            email,
            name=name,
            password_hash=hasher.hash(password),
            role=role,
            two_factor_enabled=two_factor,
            email_verified_at=clock() if verified else None,
        )

    return _make
