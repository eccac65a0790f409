import asyncio
import unittest

from assistant_runs.cancellation import CANCELLED_MESSAGE, CancellationRegistry, CancelToken, RunCancelledError


class CancelTokenTests(unittest.TestCase):
    def test_guard_returns_result_when_not_cancelled(self) -> None:
        async def scenario():
            return await CancelToken().guard(asyncio.sleep(0, result="done"))

        self.assertEqual("done", asyncio.run(scenario()))

    def test_guard_unwinds_pending_work(self) -> None:
        async def scenario():
            token = CancelToken()
            asyncio.get_running_loop().call_later(0.05, token.cancel)
            await token.guard(asyncio.sleep(10))

        with self.assertRaises(RunCancelledError) as ctx:
            asyncio.run(scenario())
        self.assertEqual(CANCELLED_MESSAGE, str(ctx.exception))

    def test_cancel_keeps_first_reason(self) -> None:
        token = CancelToken()
        token.cancel("first")
        token.cancel("second")
        self.assertTrue(token.cancelled)
        self.assertEqual("first", token.reason)
        with self.assertRaises(RunCancelledError):
            token.raise_if_cancelled()


class CancellationRegistryTests(unittest.TestCase):
    def test_cancel_and_release(self) -> None:
        registry = CancellationRegistry()
        token = registry.create("s1")

        self.assertTrue(registry.cancel("s1"))
        self.assertTrue(token.cancelled)
        self.assertFalse(registry.cancel("missing"))

        registry.release("s1", token)
        self.assertEqual([], registry.active_stream_ids())

    def test_release_ignores_a_replaced_token(self) -> None:
        registry = CancellationRegistry()
        old = registry.create("s1")
        new = registry.create("s1")

        registry.release("s1", old)

        self.assertIs(new, registry.get("s1"))
