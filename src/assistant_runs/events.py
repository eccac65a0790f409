from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Literal, Protocol, runtime_checkable

EventType = Literal["status", "trace", "text_delta", "error", "done"]
TraceKind = Literal["thought", "plan", "action"]


@dataclass(frozen=True)
class Trace:
    trace_kind: TraceKind
    text: str
    action_kind: str | None = None


@dataclass(frozen=True)
class ProviderEvent:
    """Untagged event produced by an adapter, the local loop or the tool loop."""

    type: Literal["status", "trace", "text_delta"]
    text: str | None = None
    trace: Trace | None = None

    @classmethod
    def status(cls, text: str) -> ProviderEvent:
        return cls(type="status", text=text)

    @classmethod
    def delta(cls, text: str) -> ProviderEvent:
        return cls(type="text_delta", text=text)

    @classmethod
    def traced(cls, trace_kind: TraceKind, text: str, action_kind: str | None = None) -> ProviderEvent:
        return cls(type="trace", trace=Trace(trace_kind=trace_kind, text=text, action_kind=action_kind))


OnEvent = Callable[[ProviderEvent], None]


@dataclass(frozen=True)
class StreamEvent:
    stream_id: str
    session_id: str
    type: EventType
    text: str | None = None
    trace: Trace | None = None

    def to_dict(self) -> dict:
        payload: dict = {"streamId": self.stream_id, "sessionId": self.session_id, "type": self.type}
        if self.text is not None:
            payload["text"] = self.text
        if self.trace is not None:
            trace = asdict(self.trace)
            payload["trace"] = {
                "traceKind": trace["trace_kind"],
                "text": trace["text"],
                **({"actionKind": trace["action_kind"]} if trace["action_kind"] else {}),
            }
        return payload


@runtime_checkable
class EventPublisher(Protocol):
    def publish(self, event: StreamEvent) -> None: ...


class EventSubscription:
    """Async iterator over published events.

    The queue is unbounded: a slow consumer buffers events, it never loses
    them. A subscription bound to one stream id ends after that stream's
    ``done`` event.
    """

    def __init__(self, hub: EventHub, stream_id: str | None):
        self._hub = hub
        self._stream_id = stream_id
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._finished = False
        self._ended = False

    @property
    def stream_id(self) -> str | None:
        return self._stream_id

    def _offer(self, event: StreamEvent) -> None:
        if self._finished:
            return
        if self._stream_id is not None and event.stream_id != self._stream_id:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._finished:
            self._finished = True
            self._queue.put_nowait(None)
        self._hub._unsubscribe(self)

    def drain(self) -> list[StreamEvent]:
        items: list[StreamEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                items.append(item)
        return items

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._ended:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        if self._stream_id is not None and item.type == "done":
            self._ended = True
            self.close()
        return item


class EventHub:
    """In-process fan-out of the normalized event stream."""

    def __init__(self) -> None:
        self._subscriptions: list[EventSubscription] = []

    def subscribe(self, stream_id: str | None = None) -> EventSubscription:
        subscription = EventSubscription(self, stream_id)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: StreamEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription._offer(event)

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
