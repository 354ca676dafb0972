"""Shared pytest fixtures: in-memory database, app client and sample data."""

import os

os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["KAFKA_BOOTSTRAP_SERVERS"] = ""
os.environ["LOGSTASH_HOST"] = ""
os.environ["SEED_ON_STARTUP"] = "false"

import dataclasses
from datetime import timedelta
from typing import AsyncIterator, Iterable

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from access_service import models
from access_service.auth_services import get_token_service
from access_service.config import get_settings
from access_service.database import Base, get_session, transaction
from access_service.main import app as application
from access_service.seed import seed_defaults
from access_service.services import credentials
from access_service.services.credentials import hash_password
from access_service.services.tokens import TokenService

TEST_ROUNDS = 4
DEFAULT_PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    """Keep bcrypt cheap in tests; production enforces a higher floor."""
    settings = dataclasses.replace(get_settings(), bcrypt_rounds=TEST_ROUNDS)
    monkeypatch.setattr(credentials, "get_settings", lambda: settings)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def token_service() -> TokenService:
    return TokenService("test-secret-key", timedelta(minutes=60))


@pytest.fixture
def app(session_factory, token_service):
    async def override_get_session():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_session] = override_get_session
    application.dependency_overrides[get_token_service] = lambda: token_service
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
async def seeded(session_factory):
    async with session_factory() as session:
        await seed_defaults(session)


async def create_user(
    session: AsyncSession,
    username: str,
    roles: Iterable[str] = (),
    password: str = DEFAULT_PASSWORD,
    is_active: bool = True,
) -> int:
    """Insert a user holding the named roles and return its id."""
    async with transaction(session):
        db_user = models.User(
            username=username,
            email=f"{username}@isp.net",
            password=hash_password(password, TEST_ROUNDS),
            full_name=username.replace("_", " ").title(),
            is_active=is_active,
        )
        session.add(db_user)
        await session.flush()
        user_id = db_user.id
        role_names = list(roles)
        if role_names:
            result = await session.execute(select(models.Role.id).filter(models.Role.name.in_(role_names)))
            rows = [{"user_id": user_id, "role_id": role_id} for role_id in result.scalars().all()]
            await session.execute(insert(models.UserRole), rows)
    return user_id


@pytest.fixture
def make_user(session_factory):
    async def factory(username: str, roles: Iterable[str] = (), **kwargs) -> int:
        async with session_factory() as session:
            return await create_user(session, username, roles, **kwargs)
    return factory


@pytest.fixture
def auth_headers(token_service):
    def build(user_id: int) -> dict:
        return {"Authorization": f"Bearer {token_service.issue(user_id)}"}
    return build
