import asyncio
import unittest
from types import SimpleNamespace

from assistant_runs.cancellation import CancelToken
from assistant_runs.providers.anthropic_provider import AnthropicProvider, _split_system, build_anthropic_adapter
from assistant_runs.providers.base import CompletionOptions, ProviderError


class _FakeTextStream:
    def __init__(self, deltas: list[str]):
        self._deltas = deltas

    def __aiter__(self):
        self._iter = iter(self._deltas)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class _FakeStreamContext:
    def __init__(self, deltas: list[str], final_message: object):
        self.text_stream = _FakeTextStream(deltas)
        self._final_message = final_message

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def get_final_message(self):
        return self._final_message


class _FakeMessages:
    def __init__(self, stream_ctx=None, create_response=None):
        self._stream_ctx = stream_ctx
        self._create_response = create_response
        self.stream_kwargs: dict | None = None
        self.create_kwargs: dict | None = None

    def stream(self, **kwargs):
        self.stream_kwargs = kwargs
        return self._stream_ctx

    async def create(self, **kwargs):
        self.create_kwargs = kwargs
        return self._create_response


class _FakeClient:
    def __init__(self, stream_ctx=None, create_response=None):
        self.messages = _FakeMessages(stream_ctx, create_response)


class SplitSystemTests(unittest.TestCase):
    def test_system_messages_become_system_prompt(self) -> None:
        system, messages = _split_system([
            {"role": "system", "content": "rules"},
            {"role": "user", "content": "hi"},
        ])
        self.assertEqual("rules", system)
        self.assertEqual([{"role": "user", "content": "hi"}], messages)

    def test_consecutive_roles_are_merged(self) -> None:
        _, messages = _split_system([
            {"role": "user", "content": "a"},
            {"role": "user", "content": "b"},
            {"role": "assistant", "content": "c"},
            {"role": "tool", "content": "d"},
        ])
        self.assertEqual(
            [{"role": "user", "content": "a\n\nb"}, {"role": "assistant", "content": "c\n\nd"}],
            messages,
        )


class AnthropicCompleteSyncTests(unittest.TestCase):
    def test_streams_text_and_reports_usage(self) -> None:
        final = SimpleNamespace(
            model="claude-sonnet-4-5-20250929",
            stop_reason="end_turn",
            usage=SimpleNamespace(input_tokens=20, output_tokens=4),
        )
        client = _FakeClient(stream_ctx=_FakeStreamContext(["Hello", " there"], final))
        provider = AnthropicProvider("key", client=client)
        events = []

        result = asyncio.run(provider.complete_sync(
            [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}],
            CompletionOptions(model="claude-sonnet-4-5"),
            CancelToken(),
            events.append,
        ))

        self.assertEqual("Hello there", result.text)
        self.assertEqual("claude-sonnet-4-5-20250929", result.model)
        self.assertEqual((20, 4), (result.input_tokens, result.output_tokens))
        self.assertEqual(["Hello", " there"], [e.text for e in events if e.type == "text_delta"])
        self.assertEqual("be brief", client.messages.stream_kwargs["system"])
        self.assertEqual(4096, client.messages.stream_kwargs["max_tokens"])

    def test_empty_stream_raises(self) -> None:
        final = SimpleNamespace(model="claude", stop_reason="end_turn", usage=None)
        provider = AnthropicProvider("key", client=_FakeClient(stream_ctx=_FakeStreamContext([], final)))

        with self.assertRaises(ProviderError) as ctx:
            asyncio.run(provider.complete_sync(
                [{"role": "user", "content": "hi"}], CompletionOptions(model="claude"), CancelToken(), lambda e: None
            ))
        self.assertEqual("Anthropic returned an empty response.", ctx.exception.message)


class AnthropicToolTurnTests(unittest.TestCase):
    def test_tool_use_blocks_become_tool_calls(self) -> None:
        response = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="Listing files."),
                SimpleNamespace(type="tool_use", id="toolu_1", name="run_shell", input={"command": "ls"}),
            ],
            usage=SimpleNamespace(input_tokens=30, output_tokens=8),
        )
        client = _FakeClient(create_response=response)
        provider = AnthropicProvider("key", client=client)

        turn = asyncio.run(provider.complete_tool_turn(
            "system", [{"role": "user", "content": "list"}], [{"name": "run_shell"}],
            CompletionOptions(model="claude"), CancelToken(),
        ))

        self.assertEqual("Listing files.", turn.text)
        self.assertEqual(1, len(turn.tool_calls))
        self.assertEqual("toolu_1", turn.tool_calls[0].id)
        self.assertEqual({"command": "ls"}, turn.tool_calls[0].arguments)
        self.assertEqual("assistant", turn.assistant_turn["role"])
        self.assertEqual("tool_use", turn.assistant_turn["content"][1]["type"])
        self.assertEqual([{"name": "run_shell"}], client.messages.create_kwargs["tools"])

    def test_adapter_is_tool_native(self) -> None:
        adapter = build_anthropic_adapter("key", client=_FakeClient())
        self.assertTrue(adapter.is_tool_native)
        self.assertFalse(adapter.is_async)
        self.assertFalse(adapter.requires_local_tool_loop)
