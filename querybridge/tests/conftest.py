from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any querybridge module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="querybridge-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'metadata.db')}")
os.environ.setdefault("CREDENTIAL_SECRET_KEY", "11" * 32)
os.environ.setdefault("LLM_PROVIDER", "fake")
os.environ.setdefault("CACHE_BACKEND", "memory")

import pytest  # noqa: E402
from sqlalchemy import delete  # noqa: E402

from querybridge.core.config import get_settings  # noqa: E402
from querybridge.domain.models import AuditEntry, DatabaseConnection, ExecutionResult, Translation  # noqa: E402
from querybridge.persistence.db import SessionLocal, engine, init_models  # noqa: E402


@pytest.fixture(autouse=True)
async def metadata_store() -> None:
    # Fresh tables per test; the engine is disposed so no connection outlives its event loop.
    await init_models()
    yield
    async with SessionLocal() as session:
        for model in (AuditEntry, ExecutionResult, Translation, DatabaseConnection):
            await session.execute(delete(model))
        await session.commit()
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Tests that monkeypatch env must not leak cached settings into the next test.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
