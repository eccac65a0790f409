from __future__ import annotations

import asyncio

from loguru import logger

from assistant_runs.jobs.background_jobs import BackgroundJobProcessor
from assistant_runs.storage import JobRepository


class JobScheduler:
    """Periodically advances active background jobs.

    ``tick`` is single-flight: a tick that starts while another is still
    running returns immediately without touching any job.
    """

    def __init__(
        self,
        jobs: JobRepository,
        processors: dict[str, BackgroundJobProcessor],
        *,
        interval_seconds: float = 4.0,
        batch_size: int = 25,
    ):
        self._jobs = jobs
        self._processors = processors
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._tick_in_flight = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_in_flight(self) -> bool:
        return self._tick_in_flight

    async def tick(self) -> int:
        """Process one batch. Returns the number of jobs looked at."""
        if self._tick_in_flight:
            logger.debug("Scheduler tick skipped: previous tick still running")
            return 0

        self._tick_in_flight = True
        try:
            jobs = self._jobs.list_active_jobs(list(self._processors), limit=self._batch_size)
            for job in jobs:
                processor = self._processors[job.kind]
                try:
                    await processor.process(job)
                except Exception as ex:
                    logger.warning(f"Failed to process background job {job.id}: {ex}")
            return len(jobs)
        finally:
            self._tick_in_flight = False

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as ex:
                logger.warning(f"Background scheduler tick failed: {ex}")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        logger.info(f"Background scheduler started (interval={self._interval}s, kinds={sorted(self._processors)})")
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Background scheduler stopped")
