import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might read settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from pitchcoach.app import create_app  # noqa: E402
from pitchcoach.config import Settings, reset_settings_cache  # noqa: E402
from pitchcoach.service.runtime import Runtime  # noqa: E402
from pitchcoach.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=7 * 24 * 60,
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def runtime(settings, memory_store):
    return Runtime(settings, store=memory_store)


@pytest.fixture
def client(runtime):
    """Test client bound to an app wired to the in-memory runtime."""
    return TestClient(create_app(runtime=runtime))


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
