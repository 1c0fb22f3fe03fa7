import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Must be set before anything reads the environment
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from argon2 import PasswordHasher  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from storeguard.config import Settings, reset_settings_cache  # noqa: E402
from storeguard.logging import configure_logging  # noqa: E402
from storeguard.service.audit import SecurityAuditLog  # noqa: E402
from storeguard.service.auth import Argon2Passwords, CredentialVerifier  # noqa: E402
from storeguard.service.sessions import SessionStore  # noqa: E402
from storeguard.service.tokens import HS256Signer  # noqa: E402
from storeguard.storage.memory import MemoryStore  # noqa: E402

configure_logging("WARNING")

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"


class Clock:
    """Settable wall clock shared by the services under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        use_memory_store=True,
        maintenance_enabled=False,
        log_level="WARNING",
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def passwords():
    """Argon2id with minimal cost so tests stay fast."""
    return Argon2Passwords(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def audit(store, clock):
    return SecurityAuditLog(store, queue_size=100, now=clock)


@pytest.fixture
def sessions(store, audit, clock):
    return SessionStore(store, store, audit, ttl=timedelta(days=7), max_active=5, now=clock)


@pytest.fixture
def signer(clock):
    return HS256Signer(
        TEST_SECRET,
        issuer="storeguard",
        audience="storeguard-api",
        ttl=timedelta(minutes=15),
        now=clock,
    )


@pytest.fixture
def verifier(store, sessions, audit, signer, passwords):
    return CredentialVerifier(store, sessions, audit, signer, passwords)


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
