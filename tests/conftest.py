import asyncio
import inspect
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="stepgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SECRET_ENCRYPTION_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("IDENTITY_CACHE_SWEEP_SECONDS", "")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from stepgate.config import reset_settings_cache  # noqa: E402
from stepgate.service.challenge import ChallengeIssuer  # noqa: E402
from stepgate.service.email_code import EmailCodeVerifier  # noqa: E402
from stepgate.service.login import LoginOrchestrator  # noqa: E402
from stepgate.service.recovery import RecoveryCodeManager  # noqa: E402
from stepgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from stepgate.service.totp import TotpVerifier  # noqa: E402
from stepgate.storage.identity_cache import IdentityCache  # noqa: E402
from stepgate.storage.memory import MemoryStore  # noqa: E402

TEST_KEY = "unit-test-encryption-key"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_settings_cache()
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


class FakeClock:
    """Mutable UTC clock; starts at the real current time."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender:
    """Notification sender that keeps delivered codes instead of sending them."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send_code(self, identity_id: str, code: str) -> bool:
        if self.fail:
            return False
        self.sent.append((identity_id, code))
        return True

    def last_code(self, identity_id: str) -> str:
        codes = [code for ident, code in self.sent if ident == identity_id]
        return codes[-1]


@dataclass
class StepUp:
    store: MemoryStore
    cache: IdentityCache
    clock: FakeClock
    sender: RecordingSender
    challenges: ChallengeIssuer
    totp: TotpVerifier
    email_codes: EmailCodeVerifier
    recovery: RecoveryCodeManager
    login: LoginOrchestrator


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def memory_store():
    return MemoryStore(encryption_key=TEST_KEY)


def build_stepup(store, clock: FakeClock, sender: RecordingSender) -> StepUp:
    cache = IdentityCache(clock=clock)
    challenges = ChallengeIssuer(store, clock=clock)
    recovery = RecoveryCodeManager(store)
    totp = TotpVerifier(store, issuer="StepGate", recovery=recovery, clock=clock)
    email_codes = EmailCodeVerifier(store, sender, clock=clock)
    login = LoginOrchestrator(
        store, cache, challenges, totp, email_codes, recovery, clock=clock
    )
    return StepUp(
        store=store,
        cache=cache,
        clock=clock,
        sender=sender,
        challenges=challenges,
        totp=totp,
        email_codes=email_codes,
        recovery=recovery,
        login=login,
    )


@pytest.fixture
def stepup(memory_store, clock, sender):
    return build_stepup(memory_store, clock, sender)
