from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Settings are read once at import; point them at local test backends first.
_TEST_DB = Path(tempfile.mkdtemp(prefix="labledger-tests-")) / "labledger-test.db"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB}")
os.environ.setdefault("REPORT_STORAGE_BACKEND", "memory")
os.environ.setdefault("REPORT_CONVERTER", "fake")
os.environ.setdefault("AUTH_DEV_BYPASS", "true")

import pytest  # noqa: E402

from labledger.persistence.db import create_schema, drop_schema, engine  # noqa: E402
from labledger.providers.storage.factory import get_memory_store  # noqa: E402
from labledger.services.reports import reset_report_manager  # noqa: E402


@pytest.fixture
async def fresh_schema() -> None:
    # Rebuild tables per test so version numbers and audit ids start from scratch.
    await drop_schema()
    await create_schema()
    get_memory_store().clear()
    reset_report_manager()
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
