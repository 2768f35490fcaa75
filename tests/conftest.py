import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Settings are read from the environment when the runtime is first built
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("SWEEPS_ENABLED", "false")
os.environ.setdefault("USE_REDIS_RATE_LIMITS", "false")
os.environ.setdefault("DEVICE_FINGERPRINT_SECRET", "test-fingerprint-secret-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatewarden.config import Settings  # noqa: E402
from gatewarden.service.activity import ActivityTracker  # noqa: E402
from gatewarden.service.api_keys import ApiKeyRegistry  # noqa: E402
from gatewarden.service.auth import AuthService  # noqa: E402
from gatewarden.service.common import PolicyResolver  # noqa: E402
from gatewarden.service.devices import DeviceRegistry  # noqa: E402
from gatewarden.service.events import SecurityEventLog  # noqa: E402
from gatewarden.service.lockout import CredentialGuard  # noqa: E402
from gatewarden.service.password_reset import PasswordResetFlow  # noqa: E402
from gatewarden.service.passwords import PasswordHashing  # noqa: E402
from gatewarden.service.rate_limit import InMemoryCounterStore, RateLimiter  # noqa: E402
from gatewarden.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatewarden.service.sessions import SessionRegistry  # noqa: E402
from gatewarden.service.sso import SSOCorrelator  # noqa: E402
from gatewarden.service.stats import SecurityStats  # noqa: E402
from gatewarden.service.two_factor import SecondFactorIssuer  # noqa: E402
from gatewarden.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Str0ng!Passw0rd"


class FakeClock:
    """Deterministic clock handed to every service under test."""

    def __init__(self, start=None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Keeps every notice in memory; flip ``fail`` to simulate an outage."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, category, recipient, payload):
        if self.fail:
            return False
        self.sent.append((category, recipient, payload))
        return True

    def of(self, category):
        return [entry for entry in self.sent if entry[0] == category]


def build_services(clock, notifier, settings=None):
    settings = settings or Settings(device_fingerprint_secret="test-fingerprint-secret")
    store = MemoryStore()
    policies = PolicyResolver(store, settings)
    hashing = PasswordHashing()
    events = SecurityEventLog(store, clock=clock)
    rate_limiter = RateLimiter(InMemoryCounterStore(), clock=clock)
    sessions = SessionRegistry(store, events, policies, clock=clock)
    guard = CredentialGuard(store, events, sessions, policies, notifier, clock=clock)
    activity = ActivityTracker(store, events, sessions, policies, clock=clock)
    devices = DeviceRegistry(
        store, events, sessions, fingerprint_secret=settings.device_fingerprint_secret, clock=clock
    )
    two_factor = SecondFactorIssuer(store, events, policies, notifier, clock=clock)
    api_keys = ApiKeyRegistry(store, events, clock=clock)
    password_reset = PasswordResetFlow(
        store, events, sessions, policies, notifier, hashing, clock=clock
    )
    sso = SSOCorrelator(store, events, clock=clock)
    stats = SecurityStats(store, clock=clock)
    auth = AuthService(
        store,
        events,
        policies,
        rate_limiter,
        guard,
        sessions,
        devices,
        activity,
        two_factor,
        api_keys,
        hashing,
        clock=clock,
    )
    return SimpleNamespace(
        settings=settings,
        clock=clock,
        notifier=notifier,
        store=store,
        policies=policies,
        hashing=hashing,
        events=events,
        rate_limiter=rate_limiter,
        sessions=sessions,
        guard=guard,
        activity=activity,
        devices=devices,
        two_factor=two_factor,
        api_keys=api_keys,
        password_reset=password_reset,
        sso=sso,
        stats=stats,
        auth=auth,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(clock, notifier):
    return build_services(clock, notifier)


@pytest.fixture
def make_account(services):
    """Create an account with a stored password hash, bypassing the signup flow."""

    def _make(email="alice@example.com", password=STRONG_PASSWORD, **kwargs):
        account = services.store.create_account(email, **kwargs)
        services.store.save_password(account.id, services.hashing.hash(password))
        return account

    return _make


def events_of(store, event_type):
    return [e for e in store.events if e.event_type == event_type]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
