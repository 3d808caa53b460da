"""Bounded concurrent job scheduler.

Jobs move through pending -> running -> finished/failed. An admission pass
(`tick`) starts the earliest pending jobs until `max_running` jobs are in
flight; each admitted job runs its task body as its own asyncio task so the
admission loop never waits on a job.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from .event_log import EventLog
from .models import Job

logger = logging.getLogger(__name__)

TaskBody = Callable[[Job], Awaitable[Any]]
JobListener = Callable[[tuple[Job, ...]], None]

DEFAULT_MAX_RUNNING_JOBS = 5


@dataclass
class _JobRecord:
    """Internal pairing of the public job and the body that runs it."""

    job: Job
    task_body: TaskBody | None


class JobScheduler:
    """Admit at most `max_running` jobs at once, in list order."""

    def __init__(
        self,
        *,
        event_log: EventLog | None = None,
        max_running: int = DEFAULT_MAX_RUNNING_JOBS,
        tick_interval_s: float = 1.0,
    ) -> None:
        if max_running < 1:
            raise ValueError("max_running must be at least 1")
        self.event_log = event_log or EventLog()
        self.max_running = max_running
        self.tick_interval_s = tick_interval_s
        self._records: list[_JobRecord] = []
        self._listeners: list[JobListener] = []
        # Strong references to in-flight executions; asyncio only keeps weak ones.
        self._in_flight: set[asyncio.Task[None]] = set()
        self._loop_task: asyncio.Task[None] | None = None

    # Lifecycle operations

    def submit(
        self,
        name: str,
        prompts: list[str],
        task_body: TaskBody,
        system_instructions: str | None = None,
    ) -> str:
        job = Job(
            job_id=str(uuid4()),
            name=name,
            status="pending",
            created_at=datetime.now(tz=UTC),
            prompts=list(prompts),
            system_instructions=system_instructions,
        )
        self._records.append(_JobRecord(job=job, task_body=task_body))
        self.event_log.record("info", f"Job added: {name}", {"job_id": job.job_id})
        self._notify()
        return job.job_id

    def cancel(self, job_id: str) -> bool:
        record = self._find(job_id)
        if record is None or record.job.status != "pending":
            return False
        self._records.remove(record)
        record.task_body = None
        self.event_log.record("info", f"Job cancelled: {record.job.name}", {"job_id": job_id})
        self._notify()
        return True

    def delete(self, job_id: str) -> bool:
        record = self._find(job_id)
        if record is None or record.job.status not in ("finished", "failed"):
            return False
        self._records.remove(record)
        record.task_body = None
        self._notify()
        return True

    def retry(self, job_id: str) -> bool:
        record = self._find(job_id)
        if record is None or record.job.status != "failed":
            return False
        record.job.status = "pending"
        record.job.error = None
        record.job.result = None
        record.job.created_at = datetime.now(tz=UTC)
        # Requeue behind every other pending job.
        self._records.remove(record)
        self._records.append(record)
        self.event_log.record("info", f"Job retried: {record.job.name}", {"job_id": job_id})
        self._notify()
        return True

    def prioritize(self, job_id: str) -> bool:
        record = self._find(job_id)
        if record is None or record.job.status != "pending":
            return False
        first_pending = next(r for r in self._records if r.job.status == "pending")
        if first_pending is record:
            return False
        self._records.remove(record)
        index = self._records.index(first_pending)
        self._records.insert(index, record)
        self.event_log.record("info", f"Job prioritized: {record.job.name}", {"job_id": job_id})
        self._notify()
        return True

    # Observation

    def jobs(self) -> tuple[Job, ...]:
        return tuple(record.job.model_copy(deep=True) for record in self._records)

    def get_job(self, job_id: str) -> Job | None:
        record = self._find(job_id)
        return record.job.model_copy(deep=True) if record else None

    def running_count(self) -> int:
        return sum(1 for record in self._records if record.job.status == "running")

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        self._listeners.append(listener)
        listener(self.jobs())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Scheduling

    def tick(self) -> list[str]:
        """Admit pending jobs up to the concurrency cap.

        Must be called from inside a running event loop; admitted bodies are
        scheduled with `asyncio.create_task` and not awaited here.
        """
        admitted: list[str] = []
        while self.running_count() < self.max_running:
            record = next((r for r in self._records if r.job.status == "pending"), None)
            if record is None:
                break
            record.job.status = "running"
            admitted.append(record.job.job_id)
            task = asyncio.create_task(self._execute(record))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        if admitted:
            logger.info(
                "scheduler event=admitted count=%d running=%d",
                len(admitted),
                self.running_count(),
            )
            self._notify()
        return admitted

    def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            logger.warning("scheduler event=start_ignored reason=already_running")
            return
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info("scheduler event=started tick_interval_s=%s", self.tick_interval_s)

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        logger.info("scheduler event=stopped")

    async def wait_idle(self) -> None:
        """Wait until no execution started by this scheduler is still in flight."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval_s)
            try:
                self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("scheduler event=tick_failed")

    async def _execute(self, record: _JobRecord) -> None:
        job = record.job
        self.event_log.record("info", f"Starting execution of {job.name}", {"job_id": job.job_id})

        task_body = record.task_body
        if task_body is None:
            job.status = "failed"
            job.error = "Internal error: no task body registered for job"
            self.event_log.record("error", f"Job failed: {job.name}", {"error": job.error})
            self._notify()
            return

        try:
            result = await task_body(job)
        except Exception as exc:  # noqa: BLE001
            job.error = str(exc) or exc.__class__.__name__
            job.status = "failed"
            logger.warning(
                "job event=failed job_id=%s name=%s error=%s", job.job_id, job.name, job.error
            )
            self.event_log.record(
                "error",
                f"Job failed: {job.name}",
                {"job_id": job.job_id, "error": job.error},
            )
        else:
            job.result = result
            job.status = "finished"
            # Failed jobs keep their body so retry can run it again.
            record.task_body = None
            logger.info("job event=finished job_id=%s name=%s", job.job_id, job.name)
            self.event_log.record("info", f"Job finished: {job.name}", {"job_id": job.job_id})
        finally:
            self._notify()

        # A completed job frees a slot; fill it without waiting for the next tick.
        self.tick()

    def _find(self, job_id: str) -> _JobRecord | None:
        return next((record for record in self._records if record.job.job_id == job_id), None)

    def _notify(self) -> None:
        snapshot = self.jobs()
        for listener in list(self._listeners):
            listener(snapshot)
