"""
Shared test configuration.

Settings are read once at import time, so the environment is pinned here
before anything from ``infinet`` is imported.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ADMIN_EMAILS"] = '["admin@infinet.test"]'
os.environ["DEVELOPER_EMAILS"] = '["dev@infinet.test"]'
os.environ["DEVELOPER_USER_IDS"] = '["dev-user"]'
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_STARTER_PRICE_ID"] = "price_starter"
os.environ["STRIPE_PREMIUM_PRICE_ID"] = "price_premium"
os.environ["STRIPE_LIMITLESS_PRICE_ID"] = "price_limitless"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["LOG_JSON"] = "false"

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from infinet.db import async_session_maker
from infinet.main import app
from infinet.services.auth_service import create_access_token


@pytest_asyncio.fixture
async def db_session():
    """Get a database session"""
    async with async_session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def client():
    """Create an async test client"""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def bearer(user_id: str, email: str = None) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, email)}"}


@pytest.fixture
def auth_headers():
    """Auth headers for a regular user"""
    return bearer("user-1", "user1@example.com")


@pytest.fixture
def admin_headers():
    return bearer("admin-1", "admin@infinet.test")
