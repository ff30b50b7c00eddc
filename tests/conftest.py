import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before wedding_admin.config is imported
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-testing-only-0123456789")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret-for-testing-only-0123456789abc")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from wedding_admin.config import RateLimitRule, RateLimitStrategy, Settings  # noqa: E402
from wedding_admin.config import reset_settings_cache  # noqa: E402
from wedding_admin.service.runtime import Runtime  # noqa: E402

ADMIN_PASSWORD = "Correct-Horse-42!"


class FrozenClock:
    """Manually advanced UTC clock shared by every component under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        test_mode=True,
        session_secret="s" * 48,
        csrf_secret="c" * 48,
        state_path=str(tmp_path / "admins.json"),
        rate_limits={
            # Wide enough that lockout, not rate limiting, answers repeated logins
            "login": RateLimitRule(
                strategy=RateLimitStrategy.SLIDING_WINDOW, max_requests=50, window_seconds=900
            ),
        },
    )


@pytest.fixture
def runtime(settings, clock):
    return Runtime(settings, clock=clock)


@pytest.fixture
def make_admin(runtime):
    def _make(email: str, role: str = "admin", password: str = ADMIN_PASSWORD, active: bool = True):
        user = runtime.store.create_user(email, role, is_active=active)
        runtime.identity.set_password(user.id, password)
        return user

    return _make


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


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
