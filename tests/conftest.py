import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment defaults must be in place before any tokenward import reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenward.config import Settings  # noqa: E402
from tokenward.service.auth import AuthOrchestrator  # noqa: E402
from tokenward.service.credentials import (  # noqa: E402
    Argon2CredentialVerifier,
    CredentialRecord,
    hash_secret,
)
from tokenward.service.lockout import LockoutGovernor  # noqa: E402
from tokenward.service.rate_limit import RateLimiter  # noqa: E402
from tokenward.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenward.service.sessions import SessionLifecycleManager  # noqa: E402
from tokenward.service.tokens import HmacTokenIssuer  # noqa: E402
from tokenward.storage.memory import MemoryCredentialStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Manually advanced clock shared by the store, issuer and services."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DictCredentialLookup:
    def __init__(self):
        self.records = {}

    def add(self, identifier, subject_id, secret):
        self.records[identifier] = CredentialRecord(subject_id, hash_secret(secret))

    def get_credential_record(self, identifier):
        return self.records.get(identifier)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_SECRET)


@pytest.fixture
def store(clock):
    return MemoryCredentialStore(clock=clock)


@pytest.fixture
def sessions(store, settings, clock):
    return SessionLifecycleManager(store, settings, clock=clock)


@pytest.fixture
def issuer(settings, clock):
    return HmacTokenIssuer(settings, clock=clock)


@pytest.fixture
def credential_lookup():
    lookup = DictCredentialLookup()
    lookup.add("alice@example.com", "user-alice", "CorrectHorse9!")
    return lookup


@pytest.fixture
def notifier():
    from unittest.mock import MagicMock

    mock = MagicMock()
    mock.notify_account_locked.return_value = True
    return mock


@pytest.fixture
def orchestrator(store, settings, clock, sessions, issuer, credential_lookup, notifier):
    return AuthOrchestrator(
        sessions=sessions,
        lockout=LockoutGovernor(store, settings),
        rate_limiter=RateLimiter(store, settings),
        verifier=Argon2CredentialVerifier(credential_lookup),
        issuer=issuer,
        settings=settings,
        notifier=notifier,
        clock=clock,
    )


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
