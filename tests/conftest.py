from __future__ import annotations

"""Pytest fixtures for unit and FastAPI integration tests.

The privilege backend is always the in-memory one and every test gets its own
request store under ``tmp_path``, so nothing touches the host's groups or the
real data directory.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from starlette.testclient import TestClient

# ---------------------------------------------------------------------------
# Runtime env for the application
# ---------------------------------------------------------------------------

SECRET = "unit-test-token-secret-0123456789abcdef"

os.environ.setdefault("TOKEN_SECRET", SECRET)
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("PRIVILEGE_BACKEND", "memory")
os.environ.setdefault("TEMPADMIN_DATA_DIR", tempfile.mkdtemp(prefix="tempadmin-tests-"))
os.environ.setdefault("FRONTEND_ORIGIN", "https://dashboard.test")

# Ensure project root on PYTHONPATH so `import tempadmin` works when pytest is run
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tempadmin.main import create_app, limiter  # noqa: E402, WPS433
from tempadmin.settings import Settings  # noqa: E402
from tempadmin.utils.backend import InMemoryBackend  # noqa: E402
from tempadmin.utils.lifecycle import PrivilegeLifecycle  # noqa: E402
from tempadmin.utils.scheduler import ExpirationScheduler  # noqa: E402
from tempadmin.utils.store import RequestStore  # noqa: E402
from tempadmin.utils.tokens import SecureTokenIssuer  # noqa: E402
from tests.stubs import ManualClock, RecordingChannel  # noqa: E402

VALID_SUBMISSION = {
    "requester_identity": "alice",
    "display_name": "Alice Example",
    "duration_minutes": 10,
    "reason": "Install the printer driver",
}

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        token_secret=SECRET,
        app_env="development",
        data_dir=tmp_path,
        privilege_backend="memory",
    )


@pytest.fixture()
def store(settings) -> RequestStore:
    return RequestStore(settings.requests_file)


@pytest.fixture()
def issuer(clock) -> SecureTokenIssuer:
    return SecureTokenIssuer(SECRET, clock=clock)


@pytest.fixture()
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture()
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture()
def lifecycle(store, issuer, backend, channel, clock) -> PrivilegeLifecycle:
    return PrivilegeLifecycle(store, issuer, backend, channel, clock=clock)


@pytest_asyncio.fixture()
async def scheduler(lifecycle, store, clock):
    sched = ExpirationScheduler(
        lifecycle,
        store,
        clock=clock,
        max_sleep=0.01,
        retry_initial=0.01,
        retry_max=0.05,
    )
    yield sched
    await sched.shutdown()


@pytest.fixture()
def app(settings, backend, channel) -> FastAPI:
    return create_app(settings, backend=backend, channels=[channel])


@pytest.fixture()
def api_client(app):
    """TestClient with the lifespan running (recovery + token sweeper)."""
    with TestClient(app) as client:
        yield client
