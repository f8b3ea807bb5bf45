"""Lane workers and the supervisor that owns them.

A ``LaneWorker`` claims due jobs for one lane and runs up to the lane's
concurrency at once, each job in its own session. Handler errors roll back the
handler's work, then the attempt is recorded with ``fail_job``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker

from pulse.domain.errors import RetryableJobError, TerminalJobError
from pulse.domain.queue.db_models import STATUS_ACTIVE, QueuedJob
from pulse.domain.queue.lanes import LaneConfig, get_lane
from pulse.domain.queue.service import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    claim_jobs,
    complete_job,
    fail_job,
    recover_stalled_jobs,
)
from pulse.infra.logging import clear_log_context, update_log_context
from pulse.infra.metrics import metrics
from pulse.jobs.context import JobAdapters, JobContext
from pulse.jobs.heartbeat import record_heartbeat, resolve_runner_id
from pulse.jobs.registry import get_handler
from pulse.jobs.scheduler import ensure_schedules, fire_due_schedules
from pulse.settings import settings
from pulse.shared.clock import utcnow

logger = logging.getLogger(__name__)

_HEARTBEAT_INTERVAL_SECONDS = 30.0


def _describe_error(exc: Exception) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


async def execute_job(
    session_factory: async_sessionmaker,
    job_id: uuid.UUID,
    adapters: JobAdapters,
) -> str:
    """Run one claimed job to completion or failure and return the outcome."""
    started = time.monotonic()
    async with session_factory() as session:
        job = await session.get(QueuedJob, job_id)
        if job is None or job.status != STATUS_ACTIVE:
            return OUTCOME_COMPLETED
        lane = job.lane
        update_log_context(job_id=str(job_id), lane=lane, org_id=str(job.org_id) if job.org_id else None)
        try:
            handler = get_handler(lane)
            result = await handler(JobContext(session=session, job=job, adapters=adapters, now=utcnow()))
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            await session.refresh(job)
            outcome = await fail_job(
                session,
                job,
                _describe_error(exc),
                terminal=isinstance(exc, TerminalJobError),
                retry_after=exc.retry_after if isinstance(exc, RetryableJobError) else None,
            )
            await session.commit()
            log = logger.error if outcome == OUTCOME_FAILED else logger.warning
            log(
                "job_failed",
                extra={
                    "extra": {
                        "job": job.name,
                        "attempt": job.attempts_made,
                        "max_attempts": job.max_attempts,
                        "outcome": outcome,
                        "reason": type(exc).__name__,
                    }
                },
            )
        else:
            await complete_job(session, job, _json_safe(result))
            await session.commit()
            outcome = OUTCOME_COMPLETED
            logger.info("job_complete", extra={"extra": {"job": job.name, **(_json_safe(result) or {})}})
        finally:
            clear_log_context()
    metrics.record_job(lane, outcome, time.monotonic() - started)
    return outcome


def _json_safe(result: Any) -> dict[str, Any] | None:
    if result is None:
        return None
    return {
        key: value if isinstance(value, (str, int, float, bool, type(None))) else str(value)
        for key, value in dict(result).items()
    }


class LaneWorker:
    def __init__(
        self,
        lane: LaneConfig,
        session_factory: async_sessionmaker,
        adapters: JobAdapters,
        *,
        worker_id: str,
        batch_size: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.lane = lane
        self.session_factory = session_factory
        self.adapters = adapters
        self.worker_id = worker_id
        self.batch_size = min(batch_size or settings.job_batch_size, lane.concurrency)
        self.poll_interval = poll_interval if poll_interval is not None else settings.job_poll_interval_seconds

    async def run_once(self) -> int:
        """Claim one batch and run it; returns how many jobs ran."""
        async with self.session_factory() as session:
            await recover_stalled_jobs(
                session, self.lane.name, stalled_after_seconds=settings.job_stalled_after_seconds
            )
            jobs = await claim_jobs(session, self.lane.name, limit=self.batch_size, worker_id=self.worker_id)
            job_ids = [job.job_id for job in jobs]
        if not job_ids:
            return 0
        await asyncio.gather(*(execute_job(self.session_factory, job_id, self.adapters) for job_id in job_ids))
        return len(job_ids)

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                processed = await self.run_once()
            except Exception as exc:  # noqa: BLE001
                processed = 0
                logger.warning(
                    "lane_poll_failed",
                    extra={"extra": {"lane": self.lane.name, "reason": type(exc).__name__}},
                )
            if processed:
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass


class WorkerSupervisor:
    """Owns the lane workers, the scheduler loop and the heartbeat loop of one process."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        adapters: JobAdapters | None = None,
        *,
        lane_names: list[str],
        run_scheduler: bool = True,
        poll_interval: float | None = None,
        runner_id: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.adapters = adapters or JobAdapters()
        self.run_scheduler = run_scheduler
        self.poll_interval = poll_interval if poll_interval is not None else settings.job_poll_interval_seconds
        self.runner_id = resolve_runner_id(runner_id)
        self.workers = [
            LaneWorker(
                get_lane(name),
                session_factory,
                self.adapters,
                worker_id=f"{self.runner_id}:{name}",
                poll_interval=self.poll_interval,
            )
            for name in lane_names
        ]
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def prepare(self) -> None:
        if not self.run_scheduler:
            return
        async with self.session_factory() as session:
            await ensure_schedules(session)

    async def tick_scheduler(self) -> list[str]:
        async with self.session_factory() as session:
            return await fire_due_schedules(session)

    async def run_once(self) -> dict[str, int]:
        """One scheduler tick followed by one batch per lane."""
        if self.run_scheduler:
            await self.tick_scheduler()
        processed = {worker.lane.name: await worker.run_once() for worker in self.workers}
        await record_heartbeat(self.session_factory, runner_id=self.runner_id)
        return processed

    def start(self) -> list[asyncio.Task]:
        if self.running:
            raise RuntimeError("supervisor already started")
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(worker.run_forever(self._stop_event), name=f"lane:{worker.lane.name}")
            for worker in self.workers
        ]
        if self.run_scheduler:
            self._tasks.append(asyncio.create_task(self._scheduler_loop(self._stop_event), name="scheduler"))
        self._tasks.append(asyncio.create_task(self._heartbeat_loop(self._stop_event), name="heartbeat"))
        logger.info(
            "worker_supervisor_started",
            extra={"extra": {"lanes": [worker.lane.name for worker in self.workers], "scheduler": self.run_scheduler}},
        )
        return list(self._tasks)

    async def stop(self, timeout: float = 30.0) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        tasks, self._tasks = self._tasks, []
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("worker_supervisor_stopped", extra={"extra": {"cancelled": len(pending)}})

    async def _scheduler_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.tick_scheduler()
            except Exception as exc:  # noqa: BLE001
                logger.warning("scheduler_tick_failed", extra={"extra": {"reason": type(exc).__name__}})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(self.poll_interval, 1.0))
            except asyncio.TimeoutError:
                pass

    async def _heartbeat_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await record_heartbeat(self.session_factory, runner_id=self.runner_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("worker_heartbeat_failed", extra={"extra": {"reason": type(exc).__name__}})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=_HEARTBEAT_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                pass
