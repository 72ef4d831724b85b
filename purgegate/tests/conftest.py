from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite database and fast policies before any purgegate import.
_TEST_ROOT = tempfile.mkdtemp(prefix="purgegate-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_ROOT, 'purgegate.db')}"
os.environ["DELETION_EXECUTION_MODE"] = "inline"
os.environ["DELETION_SNAPSHOT_DIR"] = os.path.join(_TEST_ROOT, "snapshots")
os.environ["DELETION_LOCK_BACKEND"] = "local"
os.environ["DELETION_LOCK_WAIT_S"] = "2"
os.environ["DELETION_PHASE_MAX_ATTEMPTS"] = "2"
os.environ["DELETION_PHASE_BACKOFF_MS"] = "1"
os.environ["DELETION_PHASE_TIMEOUT_MS"] = "5000"
os.environ["CREDENTIAL_PBKDF2_ITERATIONS"] = "1000"
os.environ["AUTH_DEV_BYPASS"] = "false"
os.environ["DELETION_PROTECTED_OWNER_IDS"] = ""

import pytest  # noqa: E402

from purgegate.core.config import get_settings  # noqa: E402
from purgegate.domain.models import Base  # noqa: E402
from purgegate.persistence.db import dispose_engine, engine  # noqa: E402
from purgegate.services.deletion.locks import reset_lock_manager  # noqa: E402
from purgegate.services.deletion.runtime import reset_runtime  # noqa: E402
from purgegate.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Each test gets empty tables, a fresh runtime and zeroed counters.
    get_settings.cache_clear()
    reset_lock_manager()
    reset_runtime()
    reset_telemetry()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await dispose_engine()
    reset_runtime()
    get_settings.cache_clear()
