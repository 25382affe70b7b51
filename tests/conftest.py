"""
Pytest configuration and fixtures for profile ingestion tests.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

# Ensure project root is importable and settings never point at a real server
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///./test_profiles.db")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ENVIRONMENT", "testing")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from profile_ingest.api import app
from profile_ingest.db import get_session
from profile_ingest.models import Base

from helpers import build_workbook, profile_row


@pytest.fixture
def three_row_sheet() -> bytes:
    """Row 3 (second data row) has no Username."""
    return build_workbook([
        profile_row("1001", "alice"),
        profile_row("1002", None),
        profile_row("1003", "carol"),
    ])


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite engine with the schema created."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'profiles.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as sess:
        yield sess


@pytest_asyncio.fixture
async def client(session_factory):
    """HTTP client against the app with sessions bound to the test database."""

    async def override_session():
        async with session_factory() as sess:
            yield sess

    app.dependency_overrides[get_session] = override_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
