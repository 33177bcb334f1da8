import asyncio
import inspect
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="passgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("APP_BASE_URL", "http://localhost:8000")
# Rate limits use the per-process window so the fake clock drives them
os.environ["REDIS_URL"] = ""
# Cheap KDF parameters keep OTP hashing fast
os.environ.setdefault("OTP_KDF_TIME_COST", "1")
os.environ.setdefault("OTP_KDF_MEMORY_KIB", "1024")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from passgate.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh store file per test
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Settable UTC clock; call it like ``datetime.now``."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@dataclass
class SentMessage:
    channel: str
    destination: str
    secret: str
    purpose: str
    expires_in_minutes: int


class RecordingGateway:
    """Delivery gateway that keeps every link and code it was asked to send."""

    def __init__(self):
        self.links: List[SentMessage] = []
        self.codes: List[SentMessage] = []

    async def send_link(self, channel, destination, url, *, purpose, expires_in_minutes):
        self.links.append(SentMessage(channel, destination, url, purpose, expires_in_minutes))

    async def send_code(self, channel, destination, code, *, purpose, expires_in_minutes):
        self.codes.append(SentMessage(channel, destination, code, purpose, expires_in_minutes))


@pytest.fixture
def clock():
    fake = FakeClock()
    get_runtime().clock = fake
    return fake


@pytest.fixture
def delivery():
    gateway = RecordingGateway()
    get_runtime().passwordless.delivery = gateway
    return gateway


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
