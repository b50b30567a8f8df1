import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest

from memochat.core.config import get_settings
from memochat.db.base import create_engine, create_sessionmaker, init_db
from memochat.main import create_app


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def app(tmp_path, monkeypatch):
    db_path = tmp_path / "test_memochat.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("APP_SECRET_KEY", "test-secret")
    monkeypatch.setenv("LLM_API_KEY", "")
    monkeypatch.setenv("WALLET_ADDRESS", "")
    monkeypatch.setenv("EMBED_PROVIDER", "deterministic")
    monkeypatch.setenv("EMBED_DIM", "64")
    monkeypatch.setenv("CHAT_SEARCH_THRESHOLD", "0.1")
    monkeypatch.setenv("CHAT_RATE_MIN_INTERVAL_SEC", "0")
    get_settings.cache_clear()
    app = create_app()
    yield app
    get_settings.cache_clear()


@pytest.fixture
async def client(app):
    await init_db(app.state.engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.background.shutdown()
    await app.state.engine.dispose()


@pytest.fixture
async def sessionmaker(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test_store.db'}")
    await init_db(engine)
    yield create_sessionmaker(engine)
    await engine.dispose()
