"""
Database-backed job worker with conditional-update claims and liveness sweeps.
"""

import asyncio
import copy
import json
import os
import random
import socket
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, select, update
from sqlalchemy.engine import Row

from jobqueue.config.logging import bind_worker_context, get_logger
from jobqueue.config.settings import Settings
from jobqueue.core.clock import Clock, ensure_utc, utcnow
from jobqueue.core.exceptions import (
    HandlerError,
    HandlerNotFoundError,
    describe_exception,
    sanitize_error_message,
)
from jobqueue.core.registries import JobContext, JobHandler, JobRegistry, job_registry
from jobqueue.infra.database import Database
from jobqueue.jobs.models import NO_HANDLER_ERROR, Job, JobErrorCode, JobStatus

logger = get_logger(__name__)

ERROR_BACKOFF_S = 5.0


def calculate_backoff(
    attempts: int,
    base_s: float,
    max_s: float,
    jitter: float = 0.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay in seconds before the next attempt after ``attempts`` executions.

    Exponential: ``min(max_s, base_s * 2 ** (attempts - 1))``. With
    ``jitter`` > 0 the delay varies by up to that fraction either way.
    """
    delay = min(max_s, base_s * (2 ** max(attempts - 1, 0)))
    if jitter:
        delay += delay * jitter * (2 * rand() - 1)
    return max(0.0, delay)


class JobWorker:
    """
    Polling job worker.

    Features:
    - Claims via conditional UPDATE, so any number of workers can share a table
    - Outcome writes fenced on the claim (status and attempt number)
    - Per-job execution timeout
    - Exponential backoff for retryable failures
    - Liveness sweep re-queueing jobs abandoned by crashed workers
    - Graceful shutdown that lets the in-flight job finish
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        registry: JobRegistry | None = None,
        worker_id: str | None = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.database = database
        self.registry = registry if registry is not None else job_registry
        self.worker_id = (
            worker_id or f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"
        )
        self.clock = clock
        self.running = False
        self.current_job_id: UUID | None = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Run the poll loop and the sweep loop until ``stop`` is called."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self._stop_event.clear()
        bind_worker_context(self.worker_id)
        logger.info(
            "Starting job worker",
            poll_interval_ms=self.settings.job_poll_interval_ms,
            batch_size=self.settings.job_batch_size,
            job_timeout_s=self.settings.job_timeout_s,
            handlers=self.registry.list(),
        )

        try:
            await asyncio.gather(self._worker_loop(), self._sweep_loop())
        finally:
            self.running = False
            logger.info("Job worker stopped")

    async def stop(self) -> None:
        """Stop polling and wait for the in-flight job, up to the grace period."""
        logger.info("Stopping job worker", worker_id=self.worker_id)
        self.running = False
        self._stop_event.set()

        timeout_seconds = self.settings.job_shutdown_timeout_s
        waited = 0.0
        while self.current_job_id is not None and waited < timeout_seconds:
            await asyncio.sleep(0.1)
            waited += 0.1

        if self.current_job_id is not None:
            # The claim stays PROCESSING and is recovered by the sweep
            logger.warning(
                "Worker stopped with an active job",
                worker_id=self.worker_id,
                job_id=str(self.current_job_id),
            )

    async def run_once(self) -> int:
        """
        Run one poll cycle: fetch due candidates and process them in order.

        Returns:
            Number of jobs this worker claimed or failed for lack of a handler
        """
        candidates = await self._fetch_candidates()
        processed = 0

        for job_id, job_type in candidates:
            if self._stop_event.is_set():
                break

            try:
                handler = self.registry.get(job_type)
            except HandlerNotFoundError:
                if await self._fail_unhandled(job_id, job_type):
                    processed += 1
                continue

            job = await self._claim_job(job_id)
            if job is None:
                continue

            await self._process_job(job, handler)
            processed += 1

        return processed

    async def sweep_stale_jobs(self) -> int:
        """
        Recover PROCESSING jobs whose claim outlived the visibility timeout.

        The abandoned execution counts against ``max_attempts``: the job goes
        back to PENDING with backoff while attempts remain, otherwise FAILED.
        """
        now = self.clock()
        timeout_seconds = self.settings.job_visibility_timeout_s
        cutoff = now - timedelta(seconds=timeout_seconds)

        async with self.database.session() as session:
            result = await session.execute(
                select(Job.id, Job.attempts, Job.max_attempts, Job.scheduled_at).where(
                    and_(
                        Job.status == JobStatus.PROCESSING.value,
                        Job.started_at < cutoff,
                    )
                )
            )
            stale_rows = list(result.all())

        recovered = 0
        for row in stale_rows:
            if await self._release_stale_job(row, now, cutoff):
                recovered += 1

        if recovered:
            logger.warning(
                "Recovered stale jobs",
                stale_job_count=recovered,
                timeout_seconds=timeout_seconds,
            )
        return recovered

    async def _worker_loop(self) -> None:
        """Main worker loop that claims and processes jobs."""
        while self.running:
            try:
                processed = await self.run_once()
            except Exception:
                logger.exception("Error in worker loop")
                await self._sleep(ERROR_BACKOFF_S)
                continue

            if processed == 0:
                await self._sleep(self.settings.job_poll_interval_ms / 1000)

    async def _sweep_loop(self) -> None:
        while self.running:
            try:
                await self.sweep_stale_jobs()
            except Exception:
                logger.exception("Error in stale job sweep")
            await self._sleep(self.settings.job_sweep_interval_s)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early once ``stop`` is requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _fetch_candidates(self) -> list[Row]:
        """Read due PENDING jobs, earliest first, without locking them."""
        now = self.clock()
        async with self.database.session() as session:
            result = await session.execute(
                select(Job.id, Job.type)
                .where(
                    and_(
                        Job.status == JobStatus.PENDING.value,
                        Job.scheduled_at <= now,
                        Job.attempts < Job.max_attempts,
                    )
                )
                .order_by(Job.scheduled_at, Job.priority.desc())
                .limit(self.settings.job_batch_size)
            )
            return list(result.all())

    async def _claim_job(self, job_id: UUID) -> Job | None:
        """
        Atomically move one job from PENDING to PROCESSING.

        Returns None when another worker claimed it first.
        """
        now = self.clock()
        async with self.database.session() as session:
            result = await session.execute(
                update(Job)
                .where(
                    and_(
                        Job.id == job_id,
                        Job.status == JobStatus.PENDING.value,
                        Job.scheduled_at <= now,
                        Job.attempts < Job.max_attempts,
                    )
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    attempts=Job.attempts + 1,
                    started_at=now,
                    locked_by=self.worker_id,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                logger.debug("Job claimed by another worker", job_id=str(job_id))
                return None

            job = (
                await session.execute(
                    select(Job)
                    .where(Job.id == job_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            await session.commit()

        logger.info(
            "Claimed job",
            job_id=str(job.id),
            job_type=job.type,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
        )
        return job

    async def _fail_unhandled(self, job_id: UUID, job_type: str) -> bool:
        """Fail a PENDING job whose type has no handler, without using an attempt."""
        now = self.clock()
        async with self.database.session() as session:
            result = await session.execute(
                update(Job)
                .where(and_(Job.id == job_id, Job.status == JobStatus.PENDING.value))
                .values(
                    status=JobStatus.FAILED.value,
                    last_error=NO_HANDLER_ERROR,
                    error_code=JobErrorCode.NO_HANDLER.value,
                    completed_at=now,
                    locked_by=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            updated = result.rowcount == 1
            await session.commit()

        if not updated:
            return False
        logger.error(
            "No handler registered for job type", job_id=str(job_id), job_type=job_type
        )
        return True

    async def _process_job(self, job: Job, handler: JobHandler) -> None:
        """Execute a claimed job and record its outcome."""
        job_logger = logger.bind(
            job_id=str(job.id), job_type=job.type, attempt=job.attempts
        )
        context = JobContext(
            job_id=job.id,
            job_type=job.type,
            project_id=job.project_id,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            database=self.database,
        )
        timeout_seconds = self.settings.job_timeout_s
        self.current_job_id = job.id

        try:
            job_logger.info("Processing job started")
            raw_result = await asyncio.wait_for(
                handler.handle(context, copy.deepcopy(job.payload)),
                timeout=timeout_seconds,
            )
            result = self._normalize_result(raw_result)

        except TimeoutError:
            job_logger.warning("Job execution timed out", timeout_s=timeout_seconds)
            await self._record_failure(
                job,
                retryable=True,
                error_code=JobErrorCode.TIMEOUT.value,
                message=f"Job execution timed out after {timeout_seconds:g}s",
            )

        except HandlerError as e:
            job_logger.warning(
                "Job handler reported failure",
                error_code=e.code,
                retryable=e.retryable,
                error=sanitize_error_message(e.message),
            )
            await self._record_failure(
                job,
                retryable=e.retryable,
                error_code=e.code,
                message=sanitize_error_message(e.message) or e.code,
            )

        except asyncio.CancelledError:
            # Left PROCESSING; the sweep re-queues it after the visibility timeout
            job_logger.warning("Job processing cancelled")
            raise

        except Exception as e:
            job_logger.exception("Job processing failed")
            await self._record_failure(
                job,
                retryable=True,
                error_code=JobErrorCode.PROCESSING_ERROR.value,
                message=describe_exception(e),
            )

        else:
            await self._mark_completed(job, result)
            job_logger.info("Processing job completed successfully")

        finally:
            self.current_job_id = None

    @staticmethod
    def _normalize_result(result: Any) -> dict[str, Any] | None:
        if result is None:
            return None
        if not isinstance(result, dict):
            raise TypeError(
                f"Job handler returned {type(result).__name__}, expected dict or None"
            )
        return json.loads(json.dumps(result))

    def _claim_fence(self, job: Job):
        return and_(
            Job.id == job.id,
            Job.status == JobStatus.PROCESSING.value,
            Job.attempts == job.attempts,
        )

    async def _write_outcome(self, job: Job, values: dict[str, Any]) -> bool:
        """Apply an outcome only if this worker's claim is still current."""
        async with self.database.session() as session:
            result = await session.execute(
                update(Job)
                .where(self._claim_fence(job))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            updated = result.rowcount == 1
            await session.commit()

        if not updated:
            logger.warning(
                "Discarding outcome for a claim this worker no longer holds",
                job_id=str(job.id),
                attempt=job.attempts,
                status=values.get("status"),
            )
            return False
        return True

    async def _mark_completed(self, job: Job, result: dict[str, Any] | None) -> None:
        now = self.clock()
        await self._write_outcome(
            job,
            {
                "status": JobStatus.COMPLETED.value,
                "result": result,
                "completed_at": now,
                "locked_by": None,
                "updated_at": now,
            },
        )

    async def _record_failure(
        self, job: Job, retryable: bool, error_code: str, message: str
    ) -> None:
        """Schedule a retry with backoff, or fail the job for good."""
        now = self.clock()

        if retryable and job.can_retry():
            next_run_at = self._next_run_at(job.attempts, job.scheduled_at, now)
            written = await self._write_outcome(
                job,
                {
                    "status": JobStatus.PENDING.value,
                    "scheduled_at": next_run_at,
                    "last_error": message,
                    "error_code": error_code,
                    "locked_by": None,
                    "updated_at": now,
                },
            )
            if written:
                logger.info(
                    "Job scheduled for retry",
                    job_id=str(job.id),
                    attempt=job.attempts,
                    next_run_at=next_run_at.isoformat(),
                )
            return

        written = await self._write_outcome(
            job,
            {
                "status": JobStatus.FAILED.value,
                "last_error": message,
                "error_code": error_code,
                "completed_at": now,
                "locked_by": None,
                "updated_at": now,
            },
        )
        if written:
            logger.error(
                "Job failed",
                job_id=str(job.id),
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                retryable=retryable,
                error_code=error_code,
            )

    def _next_run_at(
        self, attempts: int, previous: datetime, now: datetime
    ) -> datetime:
        delay = calculate_backoff(
            attempts,
            self.settings.job_backoff_base_s,
            self.settings.job_backoff_max_s,
            self.settings.job_backoff_jitter,
        )
        # scheduled_at never moves backwards
        return max(now + timedelta(seconds=delay), ensure_utc(previous))

    async def _release_stale_job(
        self, row: Row, now: datetime, cutoff: datetime
    ) -> bool:
        timeout_seconds = self.settings.job_visibility_timeout_s
        message = f"Job abandoned: no outcome within {timeout_seconds:g}s"

        if row.attempts < row.max_attempts:
            values: dict[str, Any] = {
                "status": JobStatus.PENDING.value,
                "scheduled_at": self._next_run_at(row.attempts, row.scheduled_at, now),
            }
        else:
            values = {"status": JobStatus.FAILED.value, "completed_at": now}
        values.update(
            last_error=message,
            error_code=JobErrorCode.WORKER_TIMEOUT.value,
            locked_by=None,
            updated_at=now,
        )

        async with self.database.session() as session:
            result = await session.execute(
                update(Job)
                .where(
                    and_(
                        Job.id == row.id,
                        Job.status == JobStatus.PROCESSING.value,
                        Job.attempts == row.attempts,
                        Job.started_at < cutoff,
                    )
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            updated = result.rowcount == 1
            await session.commit()

        if not updated:
            return False
        logger.warning(
            "Released stale job",
            job_id=str(row.id),
            attempt=row.attempts,
            status=values["status"],
        )
        return True


async def run_workers(
    settings: Settings,
    database: Database,
    registry: JobRegistry | None = None,
    concurrency: int = 1,
) -> None:
    """Run ``concurrency`` workers in this process until cancelled."""
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    workers = [
        JobWorker(settings, database, registry=registry) for _ in range(concurrency)
    ]
    try:
        await asyncio.gather(*(worker.start() for worker in workers))
    finally:
        await asyncio.gather(*(worker.stop() for worker in workers))
