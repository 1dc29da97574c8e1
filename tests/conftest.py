import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty REDIS_URL keeps the runtime on the in-memory session store
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters; production values are far higher
os.environ.setdefault("HASH_WORK_FACTOR", "1")
os.environ.setdefault("HASH_MEMORY_COST", "1024")
os.environ.setdefault("HASH_PARALLELISM", "1")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from invitely.service.credentials import generate_rsa_key_pair  # noqa: E402

# One key pair per test session; RSA generation is slow
_PRIVATE_PEM, _PUBLIC_PEM = generate_rsa_key_pair()
os.environ.setdefault("SIGNING_PRIVATE_KEY", _PRIVATE_PEM)
os.environ.setdefault("SIGNING_PUBLIC_KEY", _PUBLIC_PEM)

from invitely.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingMailer:
    """Mail sender that keeps messages in memory instead of sending them."""

    def __init__(self):
        self.verifications = []
        self.resets = []
        self.password_changes = []

    def send_verification(self, email, token):
        self.verifications.append((email, token))
        return True

    def send_reset(self, email, token):
        self.resets.append((email, token))
        return True

    def send_password_changed(self, email):
        self.password_changes.append(email)
        return True


@pytest.fixture(scope="session")
def rsa_keys():
    return _PRIVATE_PEM, _PUBLIC_PEM


@pytest.fixture
def mailer():
    return RecordingMailer()


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
