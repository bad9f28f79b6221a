"""Pytest configuration and fixtures for Saturn federation tests."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from saturn_federation.config import AppConfig
from saturn_federation.container import build_services
from saturn_federation.models import init_db

REMOTE_ACTOR_URI = "https://remote.example/users/carol"


@pytest.fixture
def config(tmp_path) -> AppConfig:
    """Create test configuration."""
    return AppConfig(
        instance={
            "domain": "example.com",
            "base_url": "https://example.com",
            "host": "127.0.0.1",
            "port": 8080,
        },
        # File database so background jobs get their own connections
        database={"url": f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"},
        federation={"fetch_remote_actors": False},
        generate_actor_keys=False,
    )


@pytest_asyncio.fixture
async def session_maker(config):
    """Create a temporary database and its session maker."""
    maker = await init_db(config.database.url)
    yield maker

    await maker.kw["bind"].dispose()


@pytest_asyncio.fixture
async def services(config, session_maker):
    """Fully wired services."""
    services = build_services(config, session_maker)
    yield services

    await services.close()


@pytest_asyncio.fixture
async def session(session_maker) -> AsyncSession:
    """Create database session for tests."""
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def alice(services, session):
    return await services.directory.create_local_actor(session, "alice", display_name="Alice")


@pytest_asyncio.fixture
async def bob(services, session):
    return await services.directory.create_local_actor(session, "bob", display_name="Bob")


@pytest_asyncio.fixture
async def carol(services, session):
    """Remote actor known from an embedded actor document."""
    return await services.directory.get_or_create_remote_actor(
        session,
        REMOTE_ACTOR_URI,
        {
            "id": REMOTE_ACTOR_URI,
            "type": "Person",
            "preferredUsername": "carol",
            "name": "Carol",
            "inbox": f"{REMOTE_ACTOR_URI}/inbox",
        },
    )


@pytest_asyncio.fixture
async def alice_post(services, session, alice):
    return await services.posts.create_post(session, alice.id, "Hello from Saturn")


@pytest.fixture
def read_notifications(services):
    """Drain pending fan-out, then read a recipient's notifications in a fresh session."""

    async def read(recipient_id: int):
        await services.dispatcher.drain()
        async with services.session_maker() as fresh:
            return await services.notifications.list_notifications(fresh, recipient_id, limit=100)

    return read
