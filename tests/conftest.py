from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config.settings import Settings
from jobqueue.core.registries import JobRegistry
from jobqueue.infra.database import Database
from jobqueue.jobs.service import JobService
from jobqueue.jobs.worker import JobWorker


class FakeClock:
    """Deterministic clock shared by the service and the workers under test."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test SQLite database."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        environment="test",
        job_poll_interval_ms=10,
        job_timeout_s=5,
        job_visibility_timeout_s=60,
        job_sweep_interval_s=1,
        job_shutdown_timeout_s=1,
        job_backoff_base_s=300,
        job_backoff_max_s=3600,
        job_backoff_jitter=0.0,
    )


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    """Create a test database with the jobs table."""
    database = Database(settings)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
async def session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    async with database.session() as session:
        yield session


@pytest.fixture
def registry() -> JobRegistry:
    """A fresh registry so tests never touch the process-wide one."""
    return JobRegistry()


@pytest.fixture
def service(settings: Settings, clock: FakeClock) -> JobService:
    return JobService(settings, clock=clock)


@pytest.fixture
def worker(
    settings: Settings, database: Database, registry: JobRegistry, clock: FakeClock
) -> JobWorker:
    return JobWorker(
        settings, database, registry=registry, worker_id="worker-1", clock=clock
    )


@pytest.fixture
def make_worker(settings, database, registry, clock):
    """Factory for additional workers sharing the same database and clock."""

    def _make(worker_id: str) -> JobWorker:
        return JobWorker(
            settings, database, registry=registry, worker_id=worker_id, clock=clock
        )

    return _make


@pytest.fixture
def fetch_job(database: Database, service: JobService):
    """Read a job through a fresh session."""

    async def _fetch(job_id):
        async with database.session() as session:
            return await service.get(session, job_id)

    return _fetch
