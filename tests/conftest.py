"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool
from core.database import create_session_maker
from models import Base
from schemas.pipeline import PipelineConfig
from typing import AsyncGenerator


class FakeWarehouseClient:
    """In-memory stand-in for a warehouse client"""

    def __init__(self, rows=None, healthy=True, estimate=None):
        self.rows = rows or []
        self.healthy = healthy
        self.estimate = estimate or {"bytes": 1024, "cost_usd": 0.01}
        self.queries = []
        self.closed = False

    async def query(self, sql, params=None):
        self.queries.append((sql, params))
        return list(self.rows)

    async def test_connection(self):
        return self.healthy

    async def estimate_query_cost(self, sql):
        return self.estimate

    async def close(self):
        self.closed = True


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite engine so separate sessions see each other's commits"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pipeline_test.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(test_engine):
    return create_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def client_factory():
    """Factory that records every client it creates"""
    created = []

    def factory():
        client = FakeWarehouseClient()
        created.append(client)
        return client

    factory.created = created
    return factory


@pytest.fixture
def sqp_rows():
    """Raw SQP rows as the warehouse returns them"""
    return [
        {
            "query_date": "2024-01-15",
            "query": "wireless earbuds",
            "asin": "B000TEST01",
            "impressions": 100,
            "clicks": 10,
            "purchases": 1,
        },
        {
            "query_date": "2024-01-15",
            "query": "wireless earbuds",
            "asin": "B000TEST01",
            "impressions": 150,
            "clicks": 15,
            "purchases": 2,
        },
        {
            "query_date": "2024-01-16",
            "query": "wireless earbuds",
            "asin": "B000TEST02",
            "impressions": 250,
            "clicks": 25,
            "purchases": 5,
        },
    ]


@pytest.fixture
def pipeline_config():
    """Three-step extract -> transform -> load pipeline"""
    return PipelineConfig(
        name="sqp-weekly",
        schedule="0 */6 * * *",
        max_retries=3,
        retry_delay_ms=1,
        steps=[
            {"name": "extract", "type": "extract", "config": {"sql": "SELECT * FROM sqp"}},
            {"name": "transform", "type": "transform", "dependencies": ["extract"]},
            {"name": "load", "type": "load", "dependencies": ["transform"]},
        ],
    )
