"""
Test fixtures and configuration for pytest.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from api.dependencies import get_clock, get_token_issuer
from db.database import Base, enable_sqlite_foreign_keys, get_db
from models.song import Song
from models.user import User
from services.passwords import PasswordService, get_password_service
from services.storage import (
    ObjectNotFound,
    StorageStream,
    get_storage,
    parse_range_header,
)
from services.tokens import TokenIssuer

TEST_PASSWORD = "correct horse battery"


class FakeClock:
    """Controllable UTC clock, callable like ``utcnow``."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class MemoryStorage:
    """
    Storage backend holding objects in a dict.

    Tracks opened and closed streams so tests can assert the upstream
    handle is released.
    """

    def __init__(self, objects: Optional[dict] = None, chunk_size: int = 4):
        self.objects = dict(objects or {})
        self.chunk_size = chunk_size
        self.opened: list[StorageStream] = []
        self.range_headers: list[Optional[str]] = []
        self.fail_with: Optional[Exception] = None

    async def open_stream(self, ref: str, range_header: Optional[str] = None) -> StorageStream:
        self.range_headers.append(range_header)
        if self.fail_with is not None:
            raise self.fail_with
        if ref not in self.objects:
            raise ObjectNotFound(ref)

        data = self.objects[ref]
        total = len(data)
        byte_range = parse_range_header(range_header, total)
        if byte_range is None:
            body, status_code, content_range = data, 200, None
        else:
            body = data[byte_range.start : byte_range.end + 1]
            status_code, content_range = 206, byte_range.content_range(total)

        async def chunks():
            for offset in range(0, len(body), self.chunk_size):
                yield body[offset : offset + self.chunk_size]

        stream = StorageStream(
            status_code=status_code,
            chunks=chunks(),
            content_type="audio/mpeg",
            content_length=len(body),
            content_range=content_range,
        )
        self.opened.append(stream)
        return stream


# ============== Core Fixtures ==============


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def passwords() -> PasswordService:
    """Argon2id with minimal cost so tests stay fast."""
    return PasswordService(memory_cost=8, time_cost=1, parallelism=1)


@pytest.fixture
def issuer(clock: FakeClock) -> TokenIssuer:
    return TokenIssuer(
        "test-access-secret",
        "test-refresh-secret",
        "test-stream-secret",
        issuer="music-stream",
        audience="music-stream-users",
        clock=clock,
    )


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage({"songs/track-1.mp3": b"0123456789abcdefghij"})


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Fresh SQLite file per test (file-backed so separate sessions share it)."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    enable_sqlite_foreign_keys(test_engine)

    from models import auth_audit, refresh_token, song, user  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ============== Test Data Fixtures ==============


@pytest_asyncio.fixture
async def sample_user(db_session: AsyncSession, passwords: PasswordService) -> User:
    user = User(
        username="alice",
        display_name="Alice",
        password_hash=passwords.hash(TEST_PASSWORD),
        roles=["user"],
        failed_login_attempts=0,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def sample_song(db_session: AsyncSession) -> Song:
    song = Song(
        title="First Light",
        artist="The Testers",
        storage_ref="songs/track-1.mp3",
        content_type="audio/mpeg",
    )
    db_session.add(song)
    await db_session.commit()
    await db_session.refresh(song)
    return song


# ============== Client Fixtures ==============


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    clock: FakeClock,
    issuer: TokenIssuer,
    passwords: PasswordService,
    storage: MemoryStorage,
) -> AsyncGenerator[AsyncClient, None]:
    """Test client with database, clock, token secrets, password hashing and storage overridden."""
    from main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_token_issuer] = lambda: issuer
    app.dependency_overrides[get_password_service] = lambda: passwords
    app.dependency_overrides[get_storage] = lambda: storage

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def register(client: AsyncClient, username: str = "bob", password: str = TEST_PASSWORD):
    return await client.post(
        "/api/auth/register", json={"username": username, "password": password}
    )


async def login(client: AsyncClient, username: str = "alice", password: str = TEST_PASSWORD):
    return await client.post(
        "/api/auth/login", json={"username": username, "password": password}
    )


def cookie_header(**cookies: str) -> dict:
    """Explicit Cookie header; overrides whatever the client jar holds."""
    return {"Cookie": "; ".join(f"{name}={value}" for name, value in cookies.items())}
