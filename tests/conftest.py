"""Pytest config and fixtures: temporary SQLite store, users, fake completions."""
import json
import os

# Settings are read at import time; point them at SQLite before anything else
os.environ.setdefault("DB_URL", "sqlite+aiosqlite://")
os.environ.setdefault("LOG_FORMAT", "text")

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ai.extraction import ExtractionClient
from cvrecon import models


@pytest.fixture
def db_url(tmp_path) -> str:
    """SQLite URL for a temporary file."""
    return f"sqlite+aiosqlite:///{tmp_path / 'cv.db'}"


@pytest.fixture
async def engine(db_url):
    """Async engine with all tables created.

    pysqlite's implicit transaction handling breaks SAVEPOINT, so the driver
    is put in autocommit mode and BEGIN is emitted by SQLAlchemy instead.
    """
    engine = create_async_engine(db_url)

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session_factory):
    """Factory: create a committed user and return its id."""
    counter = {"n": 0}

    async def _make(balance: float = 10.0, **fields) -> int:
        counter["n"] += 1
        async with session_factory() as session:
            user = models.User(email=f"user{counter['n']}@example.org", balance_usd=balance, **fields)
            session.add(user)
            await session.commit()
            return user.id

    return _make


@pytest.fixture
async def user_id(make_user) -> int:
    return await make_user()


class FakeCompletion:
    """Async (system, user) -> str stand-in for the completion service.

    Responses are consumed in order; an Exception instance is raised instead
    of returned. Once the queue is empty the last response repeats.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            return json.dumps(response)
        return response


def cv_payload(*categories, profile=None) -> dict:
    """Build a chunk response: cv_payload(("Education", [{"title": ..., "date": ...}]))."""
    payload = {"categories": [{"name": name, "entries": list(entries)} for name, entries in categories]}
    if profile is not None:
        payload["profile"] = profile
    return payload


@pytest.fixture
def fake_completion():
    return FakeCompletion


@pytest.fixture
def make_extractor():
    def _make(*responses) -> tuple[ExtractionClient, FakeCompletion]:
        fake = FakeCompletion(*responses)
        return ExtractionClient(complete=fake), fake

    return _make
