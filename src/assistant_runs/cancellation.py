from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from loguru import logger

T = TypeVar("T")

CANCELLED_MESSAGE = "Request cancelled by user."


class RunCancelledError(Exception):
    def __init__(self, message: str = CANCELLED_MESSAGE):
        super().__init__(message)


class CancelToken:
    """Cooperative cancellation for one run.

    Adapters and the tool executor check the token at each suspension point;
    ``guard`` races an awaitable against the token so HTTP requests and
    subprocess waits unwind as soon as the run is cancelled.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = CANCELLED_MESSAGE) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self._reason or CANCELLED_MESSAGE)

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as ex:
            logger.debug(f"Ignoring error raised while unwinding cancelled work: {ex}")
        raise RunCancelledError(self._reason or CANCELLED_MESSAGE)


class CancellationRegistry:
    """One token per stream id; the token is the single source of truth for aborting a run."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancelToken] = {}

    def create(self, stream_id: str, token: CancelToken | None = None) -> CancelToken:
        token = token or CancelToken()
        self._tokens[stream_id] = token
        return token

    def get(self, stream_id: str) -> CancelToken | None:
        return self._tokens.get(stream_id)

    def cancel(self, stream_id: str) -> bool:
        token = self._tokens.get(stream_id)
        if token is None:
            return False
        token.cancel()
        return True

    def release(self, stream_id: str, token: CancelToken | None = None) -> None:
        current = self._tokens.get(stream_id)
        if current is not None and (token is None or current is token):
            del self._tokens[stream_id]

    def active_stream_ids(self) -> list[str]:
        return list(self._tokens)
