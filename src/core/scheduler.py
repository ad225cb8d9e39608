"""
Cancellable periodic tasks keyed by entity id.

Each job runs its coroutine, waits ``interval_seconds`` and repeats until
cancelled. Cancellation only stops future runs: a run already in progress
completes and writes its result.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)

JobFunc = Callable[[], Awaitable[object]]


@dataclass
class ScheduledJob:
    key: str
    interval_seconds: float
    stopped: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    runs: int = 0
    failures: int = 0


class TaskScheduler:
    """Owns the live timers of one component"""

    def __init__(self, name: str):
        self.name = name
        self._jobs: dict[str, ScheduledJob] = {}
        self._retiring: set[asyncio.Task] = set()

    def schedule(
        self,
        key: str,
        func: JobFunc,
        interval_seconds: float,
        initial_delay: float = 0.0,
    ) -> ScheduledJob:
        """(Re)schedule ``func`` under ``key``; an existing job with that key is cancelled first"""
        self.cancel(key)

        job = ScheduledJob(key=key, interval_seconds=interval_seconds)
        job.task = asyncio.create_task(
            self._run(job, func, initial_delay), name=f"{self.name}:{key}"
        )
        self._jobs[key] = job
        logger.debug(
            "Job scheduled",
            scheduler=self.name,
            job=key,
            interval_seconds=interval_seconds,
            initial_delay=initial_delay,
        )
        return job

    def cancel(self, key: str) -> bool:
        job = self._jobs.pop(key, None)
        if job is None:
            return False

        job.stopped.set()
        if job.task is not None and not job.task.done():
            self._retiring.add(job.task)
            job.task.add_done_callback(self._retiring.discard)
        logger.debug("Job cancelled", scheduler=self.name, job=key)
        return True

    def is_scheduled(self, key: str) -> bool:
        return key in self._jobs

    def get(self, key: str) -> ScheduledJob | None:
        return self._jobs.get(key)

    @property
    def keys(self) -> list[str]:
        return list(self._jobs)

    async def shutdown(self) -> None:
        """Stop every job and wait for in-flight runs to finish"""
        for key in list(self._jobs):
            self.cancel(key)
        tasks = list(self._retiring)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped", scheduler=self.name, jobs=len(tasks))

    async def _run(self, job: ScheduledJob, func: JobFunc, initial_delay: float) -> None:
        if await self._wait_stopped(job, initial_delay):
            return

        while not job.stopped.is_set():
            try:
                await func()
            except Exception as e:
                job.failures += 1
                logger.error(
                    "Scheduled job failed",
                    scheduler=self.name,
                    job=job.key,
                    error=str(e),
                    exc_info=True,
                )
            job.runs += 1

            if await self._wait_stopped(job, job.interval_seconds):
                return

    @staticmethod
    async def _wait_stopped(job: ScheduledJob, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if the job was stopped meanwhile"""
        if timeout <= 0:
            return job.stopped.is_set()
        try:
            await asyncio.wait_for(job.stopped.wait(), timeout)
            return True
        except TimeoutError:
            return False
