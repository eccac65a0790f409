import asyncio
import unittest

from assistant_runs.jobs.scheduler import JobScheduler
from tests.storage.base import ConversationStoreTestCase


class _RecordingProcessor:
    def __init__(self, *, fail_for=None, block: asyncio.Event | None = None):
        self.seen: list[str] = []
        self._fail_for = fail_for or set()
        self._block = block

    async def process(self, job) -> None:
        self.seen.append(job.id)
        if self._block is not None:
            await self._block.wait()
        if job.id in self._fail_for:
            raise RuntimeError("poll exploded")


class JobSchedulerTests(ConversationStoreTestCase):
    def test_tick_processes_only_registered_kinds(self) -> None:
        wanted = self._jobs.create_job("openai_background", {"n": 1})
        self._jobs.create_job("other", {"n": 2})
        processor = _RecordingProcessor()
        scheduler = JobScheduler(self._jobs, {"openai_background": processor})

        self.assertEqual(1, asyncio.run(scheduler.tick()))
        self.assertEqual([wanted.id], processor.seen)

    def test_one_failing_job_does_not_stop_the_batch(self) -> None:
        first = self._jobs.create_job("k", {})
        second = self._jobs.create_job("k", {})
        processor = _RecordingProcessor(fail_for={first.id})
        scheduler = JobScheduler(self._jobs, {"k": processor})

        self.assertEqual(2, asyncio.run(scheduler.tick()))
        self.assertCountEqual([first.id, second.id], processor.seen)
        self.assertFalse(scheduler.tick_in_flight)

    def test_overlapping_tick_is_skipped(self) -> None:
        self._jobs.create_job("k", {})

        async def scenario():
            gate = asyncio.Event()
            processor = _RecordingProcessor(block=gate)
            scheduler = JobScheduler(self._jobs, {"k": processor})
            first = asyncio.create_task(scheduler.tick())
            await asyncio.sleep(0)
            skipped = await scheduler.tick()
            gate.set()
            return skipped, await first, processor.seen

        skipped, processed, seen = asyncio.run(scenario())
        self.assertEqual(0, skipped)
        self.assertEqual(1, processed)
        self.assertEqual(1, len(seen))

    def test_batch_size_limits_a_tick(self) -> None:
        for _ in range(3):
            self._jobs.create_job("k", {})
        processor = _RecordingProcessor()
        scheduler = JobScheduler(self._jobs, {"k": processor}, batch_size=2)
        self.assertEqual(2, asyncio.run(scheduler.tick()))

    def test_start_and_stop(self) -> None:
        self._jobs.create_job("k", {})
        processor = _RecordingProcessor()

        async def scenario():
            scheduler = JobScheduler(self._jobs, {"k": processor}, interval_seconds=0.01)
            scheduler.start()
            scheduler.start()
            self.assertTrue(scheduler.running)
            await asyncio.sleep(0.05)
            await scheduler.stop()
            self.assertFalse(scheduler.running)
            await scheduler.stop()

        asyncio.run(scenario())
        self.assertGreaterEqual(len(processor.seen), 2)


if __name__ == "__main__":
    unittest.main()
