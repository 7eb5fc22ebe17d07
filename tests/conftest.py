import os
import sys
import tempfile
from pathlib import Path

# Prepare the environment before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authkeeper_test_")
os.environ.setdefault("AUTHKEEPER_STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authkeeper.service.identity import IdentityResolver  # noqa: E402
from authkeeper.service.passwords import Argon2Hasher  # noqa: E402
from authkeeper.service.runtime import reset_runtime_for_tests  # noqa: E402
from authkeeper.service.sessions import SessionManager  # noqa: E402
from authkeeper.service.tokens import TokenCodec  # noqa: E402
from authkeeper.storage.memory import MemoryStore  # noqa: E402
from authkeeper.storage.revocation import MemoryRevocationStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Manually advanced clock shared by the codec and revocation store."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hasher():
    # Cheap argon2id parameters keep the suite fast
    return Argon2Hasher(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def revocations(clock):
    return MemoryRevocationStore(clock=clock)


@pytest.fixture
def codec(clock):
    return TokenCodec(TEST_SECRET, issuer="authkeeper-test", clock=clock)


@pytest.fixture
def resolver(store, hasher):
    return IdentityResolver(store, hasher)


@pytest.fixture
def sessions(store, hasher, codec, revocations, resolver, clock):
    return SessionManager(
        store,
        hasher,
        codec,
        revocations,
        resolver,
        sweep_interval_seconds=300,
        clock=clock,
    )
