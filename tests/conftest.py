"""
EarthX Hub: pytest fixtures and configuration.

Provides:
- Test environment (set before the app package is imported)
- Throwaway SQLite database per test
- Fake chain client and ASGI HTTP client wired onto the app
"""
import os
import tempfile
from pathlib import Path

_TEST_DIR = Path(tempfile.mkdtemp(prefix="earthx-tests-"))

os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR / 'app.db'}"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["MINT_TRIGGER_DELAY_MS"] = "0"
os.environ["MINT_RETRY_DELAY_MS"] = "1"
os.environ["MINT_RETRY_SWEEP_ENABLED"] = "false"
os.environ["CHAIN_RPC_URL"] = ""
os.environ["CHAIN_PRIVATE_KEY"] = ""
os.environ["CHAIN_CONTRACT_ADDRESS"] = ""

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from app.core.batches.gateway import PersistenceGateway  # noqa: E402
from app.db.models import Base  # noqa: E402
from tests.helpers import FakeChainClient  # noqa: E402


# =============================================================================
# Database
# =============================================================================
@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    try:
        yield factory
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway(session_factory) -> PersistenceGateway:
    return PersistenceGateway(session_factory)


@pytest.fixture
def fake_chain() -> FakeChainClient:
    return FakeChainClient()


# =============================================================================
# HTTP Client
# =============================================================================
@pytest_asyncio.fixture
async def test_app(session_factory, fake_chain):
    from app.main import app, init_app_state

    init_app_state(app, session_factory=session_factory, chain_client=fake_chain)
    try:
        yield app
    finally:
        await app.state.mint_dispatcher.shutdown()


@pytest_asyncio.fixture
async def client(test_app):
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
