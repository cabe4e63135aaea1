from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any entitysync module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="entitysync-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'entitysync.db')}"
os.environ["EXECUTION_MODE"] = "inline"
os.environ["COMPLETION_BACKEND"] = "local"

import pytest  # noqa: E402

from entitysync.domain.models import Base  # noqa: E402
from entitysync.persistence.db import engine  # noqa: E402
from entitysync.services.registry import set_registry  # noqa: E402
from entitysync.services.sync.completion import reset_local_completion_store  # noqa: E402
from entitysync.services.sync.queue import reset_local_queue  # noqa: E402
from entitysync.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test; dispose so pooled connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Inline queue, completion counters, registry and counters are process-wide.
    reset_local_queue()
    reset_local_completion_store()
    set_registry(None)
    reset_telemetry()
    yield
    reset_local_queue()
    reset_local_completion_store()
    set_registry(None)
