import asyncio
import unittest

from assistant_runs.events import EventHub, ProviderEvent, StreamEvent, Trace


def _event(stream_id: str, type: str, text: str | None = None) -> StreamEvent:
    return StreamEvent(stream_id=stream_id, session_id="sess", type=type, text=text)


class StreamEventTests(unittest.TestCase):
    def test_to_dict_omits_absent_fields(self) -> None:
        self.assertEqual(
            {"streamId": "s1", "sessionId": "sess", "type": "done"},
            _event("s1", "done").to_dict(),
        )

    def test_to_dict_renders_trace(self) -> None:
        event = StreamEvent(
            stream_id="s1", session_id="sess", type="trace",
            trace=Trace(trace_kind="action", text="ls", action_kind="command"),
        )
        self.assertEqual(
            {"traceKind": "action", "text": "ls", "actionKind": "command"},
            event.to_dict()["trace"],
        )

    def test_provider_event_helpers(self) -> None:
        self.assertEqual("text_delta", ProviderEvent.delta("x").type)
        self.assertEqual("plan", ProviderEvent.traced("plan", "1. a").trace.trace_kind)


class EventHubTests(unittest.TestCase):
    def test_stream_subscription_filters_and_ends_on_done(self) -> None:
        async def scenario():
            hub = EventHub()
            subscription = hub.subscribe("s1")
            hub.publish(_event("s1", "status", "Queued"))
            hub.publish(_event("s2", "status", "other run"))
            hub.publish(_event("s1", "text_delta", "hi"))
            hub.publish(_event("s1", "done"))
            hub.publish(_event("s1", "status", "after done"))
            return [event.type async for event in subscription]

        self.assertEqual(["status", "text_delta", "done"], asyncio.run(scenario()))

    def test_firehose_sees_every_stream(self) -> None:
        hub = EventHub()
        subscription = hub.subscribe()
        hub.publish(_event("s1", "done"))
        hub.publish(_event("s2", "done"))
        self.assertEqual(["s1", "s2"], [e.stream_id for e in subscription.drain()])

    def test_closed_subscription_stops_receiving(self) -> None:
        hub = EventHub()
        subscription = hub.subscribe("s1")
        subscription.close()
        hub.publish(_event("s1", "status", "late"))
        self.assertEqual([], subscription.drain())
