"""In-process background job queue for export, deletion and webhook work."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger()


@dataclass
class JobResult:
    job_id: str
    kind: str
    ok: bool
    value: Any = None
    error: str | None = None


JobFunc = Callable[[], Awaitable[Any]]
CompletionCallback = Callable[[JobResult], Awaitable[None]]


class JobAlreadySubmittedError(RuntimeError):
    pass


class JobQueue:
    """Runs submitted coroutines as asyncio tasks under a concurrency limit.

    Each job is identified by its id; an id can only be active once. When a
    job finishes, its JobResult is handed to the optional completion callback.
    """

    def __init__(self, max_concurrency: int = 4):
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def active_jobs(self) -> list[str]:
        return list(self._tasks)

    def is_active(self, job_id: str) -> bool:
        return job_id in self._tasks

    def submit(
        self,
        job_id: str,
        kind: str,
        func: JobFunc,
        on_complete: CompletionCallback | None = None,
    ) -> None:
        """Schedule a job and return immediately."""
        if self._closed:
            raise RuntimeError("Job queue is shut down.")
        if job_id in self._tasks:
            raise JobAlreadySubmittedError(f"Job {job_id} is already running.")

        task = asyncio.create_task(self._run(job_id, kind, func, on_complete))
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._forget(job_id, t))
        logger.debug("job_submitted", job_id=job_id, kind=kind)

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    async def _run(
        self,
        job_id: str,
        kind: str,
        func: JobFunc,
        on_complete: CompletionCallback | None,
    ) -> JobResult:
        async with self._semaphore:
            try:
                value = await func()
                result = JobResult(job_id=job_id, kind=kind, ok=True, value=value)
            except Exception as e:
                logger.exception("job_failed", job_id=job_id, kind=kind)
                result = JobResult(job_id=job_id, kind=kind, ok=False, error=str(e) or type(e).__name__)

        if on_complete is not None:
            try:
                await on_complete(result)
            except Exception:
                logger.exception("job_callback_failed", job_id=job_id, kind=kind)

        logger.debug("job_finished", job_id=job_id, kind=kind, ok=result.ok)
        return result

    async def wait(self, job_id: str) -> JobResult | None:
        """Wait for an active job. Returns None if the job is not active."""
        task = self._tasks.get(job_id)
        if task is None:
            return None
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait until every job (including jobs submitted meanwhile) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop accepting jobs and let running ones finish."""
        self._closed = True
        await self.drain()
        logger.info("job_queue_stopped")
