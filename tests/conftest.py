import asyncio
import inspect
import os
import tempfile

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="passgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SIGNING_KEY", "test-signing-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.pop("SENDER_BASE_URL", None)

import pytest  # noqa: E402

from passgate.config import Settings  # noqa: E402
from passgate.service.auth import AuthService  # noqa: E402
from passgate.service.clock import FrozenClock  # noqa: E402
from passgate.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from passgate.storage.memory import MemoryStore  # noqa: E402

START_MS = 1_700_000_000_000


class RecordingNotifier:
    """Keeps every delivery so tests can read the secret that was sent."""

    def __init__(self):
        self.sent = []

    def send(self, source, destination, template_id, options=None):
        self.sent.append(
            {
                "source": source,
                "destination": destination,
                "template_id": template_id,
                "options": options or {},
            }
        )
        return True


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        signing_key="unit-test-signing-key-0123456789abcdef",
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FrozenClock(START_MS)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def outbox():
    """Route the app runtime's deliveries into a recorder."""
    recorder = RecordingNotifier()
    runtime = get_runtime()
    runtime.notifier = recorder
    runtime.auth.notifier = recorder
    return recorder


@pytest.fixture
def service(store, settings, clock, notifier):
    return AuthService(store, settings, clock=clock, notifier=notifier)


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
