"""
Shared test fixtures.

Every test gets its own in-memory SQLite database, a fresh job store and an
app built with fast settings (no step delay, short heartbeat).
"""

import asyncio
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STEP_DELAY_SECONDS", "0")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from app.db import make_engine  # noqa: E402
from app.job_store import JobStore  # noqa: E402
from app.main import create_app  # noqa: E402
from app.repository import AssignmentRepository  # noqa: E402
from app.runner import JobRunner  # noqa: E402
from app.settings import Settings  # noqa: E402

AUTH = ("author", "secret")


class ScriptedGenerator:
    """Content generator that replays fixed progress steps, then returns `result` or raises `error`."""

    def __init__(self, steps=(), result=None, error=None, gate=None):
        self.steps = list(steps)
        self.result = result
        self.error = error
        self.gate = gate
        self.calls = 0

    async def generate(self, work, on_progress):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        for percentage, text in self.steps:
            on_progress(percentage, text)
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.result


async def wait_for_watchers(store: JobStore, job_id: int, count: int, timeout: float = 5.0) -> None:
    async def _poll():
        while store.watcher_count(job_id) < count:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


async def wait_for_watchers_to_drop(store: JobStore, job_id: int, count: int, timeout: float = 5.0) -> None:
    async def _poll():
        while store.watcher_count(job_id) > count:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


# ---------------------------------------------------------------------------
# Core components
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    return make_engine("sqlite://")


@pytest.fixture
def store(engine):
    return JobStore(engine, retention_seconds=60)


@pytest.fixture
def repository(engine):
    return AssignmentRepository(engine)


@pytest.fixture
def assignment(repository):
    return repository.create("Week 1 quiz", "Warm-up questions")


@pytest_asyncio.fixture
async def runner(store, repository):
    runner = JobRunner(store, repository)
    yield runner
    await runner.shutdown()


# ---------------------------------------------------------------------------
# HTTP app
# ---------------------------------------------------------------------------

@pytest.fixture
def test_settings():
    return Settings(
        DATABASE_URL="sqlite://",
        BASIC_USER=AUTH[0],
        BASIC_PASS=AUTH[1],
        STEP_DELAY_SECONDS=0,
        STREAM_HEARTBEAT_SECONDS=0.05,
    )


@pytest_asyncio.fixture
async def test_app(test_settings):
    app = create_app(test_settings)
    yield app
    await app.state.runner.shutdown()


@pytest_asyncio.fixture
async def test_client(test_app):
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test", auth=AUTH) as client:
        yield client


@pytest_asyncio.fixture
async def assignment_id(test_client):
    resp = await test_client.post("/api/assignments", json={"name": "Week 1 quiz"})
    assert resp.status_code == 200
    return resp.json()["id"]
