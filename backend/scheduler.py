"""
Periodic job scheduler for stack auto-updates

Responsibilities:
- One recurring asyncio task per stack id
- Opaque job ids handed back to callers and stored on the stack record
- Job bodies never overlap for a stack: a stack has a single loop and
  stopping it waits for a running body to finish instead of interrupting it
"""

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from utils.duration_parser import parse_duration

logger = logging.getLogger(__name__)

JobBody = Callable[[], Awaitable[None]]


class SchedulerError(RuntimeError):
    """Raised when a job cannot be registered."""
    pass


@dataclass
class ScheduledJob:
    """A live recurring job."""
    job_id: str
    stack_id: int
    interval_seconds: float
    task: Optional[asyncio.Task] = None
    stopped: bool = False
    running: bool = False  # True while the body executes
    run_count: int = 0
    last_error: Optional[str] = field(default=None, repr=False)


class JobScheduler:
    """Background scheduler keyed by stack id"""

    def __init__(self):
        self.jobs: Dict[int, ScheduledJob] = {}
        self._lock = asyncio.Lock()

    async def start(self, stack_id: int, interval: str, body: JobBody) -> str:
        """
        Register a recurring job for a stack.

        Any job already registered for the stack is stopped first, so there is
        at most one job per stack. The first run happens one interval from now.

        Args:
            stack_id: Stack the job belongs to
            interval: Duration string such as "5m" or "1h30m"
            body: Coroutine function run on every tick

        Returns:
            Fresh job id

        Raises:
            SchedulerError: If the interval is not a positive duration
        """
        try:
            seconds = parse_duration(interval)
        except ValueError as e:
            raise SchedulerError(f"Invalid interval '{interval}': {e}")
        if seconds <= 0:
            raise SchedulerError(f"Invalid interval '{interval}': must be positive")

        async with self._lock:
            existing = self.jobs.get(stack_id)
            if existing is not None:
                await self._stop_job(existing)

            job = ScheduledJob(job_id=uuid.uuid4().hex, stack_id=stack_id, interval_seconds=seconds)
            job.task = asyncio.create_task(self._run_loop(job, body))
            self.jobs[stack_id] = job

        logger.info(f"Scheduled auto-update job {job.job_id} for stack {stack_id} every {interval}")
        return job.job_id

    async def stop(self, stack_id: int, job_id: Optional[str]) -> None:
        """
        Stop a stack's job. Idempotent: unknown stacks or job ids are a no-op.

        If the job body is running, waits for it to finish.
        """
        async with self._lock:
            job = self.jobs.get(stack_id)
            if job is None or job.job_id != job_id:
                logger.debug(f"No live job {job_id} for stack {stack_id}, nothing to stop")
                return
            await self._stop_job(job)

        logger.info(f"Stopped auto-update job {job_id} for stack {stack_id}")

    def stop_nowait(self, stack_id: int, job_id: Optional[str]) -> None:
        """
        Retire a job without waiting for it.

        Meant for job bodies that find their stack gone: the loop exits once
        the current run returns. Doesn't take the scheduler lock, which a
        caller of stop() may hold while waiting for that very run.
        """
        job = self.jobs.get(stack_id)
        if job is None or job.job_id != job_id:
            return
        job.stopped = True
        self.jobs.pop(stack_id, None)
        if job.task is not None and not job.running and job.task is not asyncio.current_task():
            job.task.cancel()
        logger.info(f"Retired auto-update job {job_id} for stack {stack_id}")

    async def shutdown(self) -> None:
        """Stop every job (application shutdown)"""
        async with self._lock:
            for job in list(self.jobs.values()):
                await self._stop_job(job)
        logger.info("Job scheduler stopped")

    def get_job(self, stack_id: int) -> Optional[ScheduledJob]:
        return self.jobs.get(stack_id)

    def has_job(self, stack_id: int, job_id: Optional[str]) -> bool:
        """True if job_id is the live job of stack_id."""
        job = self.jobs.get(stack_id)
        return job is not None and job_id is not None and job.job_id == job_id

    async def _stop_job(self, job: ScheduledJob) -> None:
        job.stopped = True
        self.jobs.pop(job.stack_id, None)

        task = job.task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # A body stopping its own job; the loop exits after this run
            return

        if not job.running:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug(f"Job {job.job_id} for stack {job.stack_id} cancelled")
        except Exception as e:
            logger.warning(f"Exception while stopping job {job.job_id}: {e}")

    async def _run_loop(self, job: ScheduledJob, body: JobBody) -> None:
        """Periodic loop for a single stack"""
        try:
            while not job.stopped:
                await asyncio.sleep(job.interval_seconds)
                if job.stopped:
                    break

                job.running = True
                try:
                    await body()
                    job.last_error = None
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # Keep the schedule alive; the next tick retries
                    job.last_error = str(e)
                    logger.error(f"Auto-update job {job.job_id} for stack {job.stack_id} failed: {e}")
                finally:
                    job.running = False
                    job.run_count += 1
        finally:
            # Only drop the entry if it still belongs to this job
            if self.jobs.get(job.stack_id) is job:
                self.jobs.pop(job.stack_id, None)


# Singleton instance with thread-safe initialization
_scheduler: Optional[JobScheduler] = None
_scheduler_lock = threading.Lock()


def get_scheduler() -> JobScheduler:
    """
    Get or create the process-wide JobScheduler.

    Thread-safe using double-checked locking pattern.
    """
    global _scheduler

    if _scheduler is not None:
        return _scheduler

    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = JobScheduler()
        return _scheduler
