"""Pytest fixtures for integration tests.

Provides async database fixtures for testing query functions, admin
controls and the worker loop against a file-backed SQLite database. The
production system runs on PostgreSQL with pgvector; SQLite serializes
writers, which is enough to exercise the queue's claim and
deduplication guarantees with several concurrent sessions.

Embeddings come from FakeEmbeddingProvider, a deterministic bag-of-words
hasher, so similarity between texts follows their word overlap.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from jobflow.config import (
    DatabaseConfig,
    JobflowConfig,
    ProviderConfig,
    WorkerConfig,
)
from jobflow.database.models.base import Base, utcnow
from jobflow.database.models.entity import EMBEDDING_DIMENSIONS, Candidate, Job
from jobflow.database.models.task import QueueTask
from jobflow.matching.engine import EmbeddingEngine
from jobflow.worker.memory import MemoryMonitor
from jobflow.worker.process import Worker

_TOKEN_RE = re.compile(r"[^a-z0-9]+")


class FakeEmbeddingProvider:
    """Deterministic embedding provider for tests.

    Each lowercase alphanumeric token is hashed into one of ``dimensions``
    buckets and counted, so texts sharing words get similar vectors and
    texts with disjoint vocabularies are close to orthogonal.
    """

    model = "fake-bag-of-words"

    def __init__(self, dimensions: int = EMBEDDING_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.calls: list[str] = []
        self.error: Exception | None = None
        self.delay = 0.0

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        vector = [0.0] * self.dimensions
        for token in _TOKEN_RE.split(text.lower()):
            if not token:
                continue
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "big") % self.dimensions] += 1.0
        return vector


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a file-backed SQLite async engine for testing.

    A file database (rather than :memory:) lets concurrent sessions use
    separate connections to the same data.

    Yields:
        Configured AsyncEngine instance with all tables created.
    """
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'jobflow-test.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a new async database session for each test.

    Query functions commit their own work, so state written through this
    session is visible to every other session of the test.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def config(tmp_path: Path) -> JobflowConfig:
    """Worker-ready configuration pointing at the test database."""
    return JobflowConfig(
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'jobflow-test.db'}"),
        provider=ProviderConfig(api_key="sk-test-key"),
        worker=WorkerConfig(
            poll_interval_seconds=0.05,
            inter_task_delay_seconds=0,
            graceful_shutdown_timeout_seconds=2,
        ),
    )


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def embedding_engine(
    fake_provider: FakeEmbeddingProvider,
    config: JobflowConfig,
) -> EmbeddingEngine:
    return EmbeddingEngine(fake_provider, config.provider, batch_size=2)


@pytest_asyncio.fixture
async def worker(
    config: JobflowConfig,
    session_factory: async_sessionmaker[AsyncSession],
    embedding_engine: EmbeddingEngine,
) -> AsyncGenerator[Worker, None]:
    """A started worker wired to the test database and fake provider.

    Yields:
        Worker that has registered itself; shut down after the test.
    """
    test_worker = Worker(
        config,
        session_factory=session_factory,
        embedding_engine=embedding_engine,
        memory_monitor=MemoryMonitor(memory_limit_mb=1_000_000),
        worker_id="test-worker",
    )
    await test_worker.startup()
    yield test_worker
    await test_worker.shutdown()


@pytest.fixture
def make_job(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Job]]:
    """Factory inserting a job row; keyword arguments override fields."""

    async def _make(**fields: Any) -> Job:
        fields.setdefault("title", "Senior Backend Engineer")
        async with session_factory() as session:
            job = Job(**fields)
            session.add(job)
            await session.commit()
            return job

    return _make


@pytest.fixture
def make_candidate(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Candidate]]:
    """Factory inserting a candidate row; keyword arguments override fields."""

    async def _make(**fields: Any) -> Candidate:
        fields.setdefault("title", "Backend Engineer")
        async with session_factory() as session:
            candidate = Candidate(**fields)
            session.add(candidate)
            await session.commit()
            return candidate

    return _make


@pytest.fixture
def backdate_task(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[None]]:
    """Shift a task's timestamps into the past to simulate elapsed time.

    Accepts any of claimed_at, next_retry_at and updated_at as a timedelta
    to subtract from now.
    """

    async def _backdate(task_id: UUID, **ages: timedelta) -> None:
        now = utcnow()
        values = {column: now - age for column, age in ages.items()}
        async with session_factory() as session:
            await session.execute(
                update(QueueTask)
                .where(QueueTask.id == task_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    return _backdate
