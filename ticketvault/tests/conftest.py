from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Settings are read at import time, so point them at a scratch database first.
_SCRATCH_DIR = Path(tempfile.mkdtemp(prefix="ticketvault-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SCRATCH_DIR / 'ticketvault.db'}")
os.environ["EXPORT_BASE_DIR"] = str(_SCRATCH_DIR / "exports")
os.environ["ARCHIVAL_SCHEDULER_AUTOSTART"] = "false"

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from ticketvault.core.config import get_settings  # noqa: E402
from ticketvault.domain.models import Base  # noqa: E402
from ticketvault.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_schema() -> None:
    # Every test starts from empty tables; dispose so no connection outlives its loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear cached settings so monkeypatched env does not leak across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def export_dir(tmp_path, monkeypatch) -> Path:
    # Route API exports into a per-test directory.
    target = tmp_path / "exports"
    monkeypatch.setenv("EXPORT_BASE_DIR", str(target))
    get_settings.cache_clear()
    return target


@pytest.fixture
async def client(export_dir) -> AsyncClient:
    from ticketvault.apps.api.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
    await app.state.archival_scheduler.shutdown()
