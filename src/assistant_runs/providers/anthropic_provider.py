from __future__ import annotations

import anthropic
from loguru import logger
from tenacity import retry

from assistant_runs.cancellation import CancelToken
from assistant_runs.events import OnEvent, ProviderEvent
from assistant_runs.providers.base import (
    CompletionOptions,
    CompletionResult,
    ConnectionCheck,
    ProviderAdapter,
    ProviderError,
    ToolCall,
    ToolTurnResult,
)
from assistant_runs.providers.common import as_token_count, default_retry_kwargs

_DEFAULT_MAX_TOKENS = 4096

_RETRYABLE = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
)


def _split_system(history: list[dict]) -> tuple[str, list[dict]]:
    """Pull system text out of the history and merge consecutive same-role turns."""
    system_parts: list[str] = []
    messages: list[dict] = []
    for message in history:
        role = message.get("role", "user")
        content = str(message.get("content", ""))
        if role == "system":
            system_parts.append(content)
            continue
        if role == "tool":
            role = "assistant"
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + content
        else:
            messages.append({"role": role, "content": content})
    return "\n\n".join(system_parts), messages


def _describe(error: anthropic.APIError) -> str:
    body = getattr(error, "body", None)
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return getattr(error, "message", None) or str(error) or "Anthropic request failed"


class AnthropicProvider:
    def __init__(self, api_key: str, *, client: object | None = None):
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    async def test_connection(self) -> ConnectionCheck:
        try:
            await self._client.models.list(limit=1)
        except anthropic.APIStatusError as ex:
            return ConnectionCheck(ok=False, status=ex.status_code, reason=_describe(ex))
        except anthropic.APIError as ex:
            return ConnectionCheck(ok=False, status=0, reason=_describe(ex))
        return ConnectionCheck(ok=True, status=200)

    async def list_models(self) -> list[str]:
        model_ids: list[str] = []
        try:
            async for model in self._client.models.list():
                model_id = getattr(model, "id", None)
                if isinstance(model_id, str) and model_id:
                    model_ids.append(model_id)
        except anthropic.APIError as ex:
            raise ProviderError(_describe(ex)) from ex
        return sorted(set(model_ids))

    async def complete_sync(
        self,
        history: list[dict],
        options: CompletionOptions,
        cancel_token: CancelToken,
        on_event: OnEvent,
    ) -> CompletionResult:
        on_event(ProviderEvent.status("Streaming response..."))
        try:
            return await cancel_token.guard(self._stream_completion(history, options, on_event))
        except anthropic.APIError as ex:
            raise ProviderError(_describe(ex)) from ex

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def _stream_completion(
        self,
        history: list[dict],
        options: CompletionOptions,
        on_event: OnEvent,
    ) -> CompletionResult:
        system_prompt, messages = _split_system(history)
        kwargs: dict = {
            "model": options.model,
            "max_tokens": options.max_output_tokens or _DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature

        logger.debug(f"Anthropic request: model={options.model}, messages={len(messages)}")
        text_parts: list[str] = []
        async with self._client.messages.stream(**kwargs) as stream:
            async for delta in stream.text_stream:
                if delta:
                    text_parts.append(delta)
                    on_event(ProviderEvent.delta(delta))
            response = await stream.get_final_message()

        text = "".join(text_parts)
        if not text.strip():
            raise ProviderError("Anthropic returned an empty response.")

        usage = getattr(response, "usage", None)
        logger.debug(f"Anthropic response: stop_reason={getattr(response, 'stop_reason', None)}")
        return CompletionResult(
            text=text,
            model=getattr(response, "model", None) or options.model,
            input_tokens=as_token_count(getattr(usage, "input_tokens", None)),
            output_tokens=as_token_count(getattr(usage, "output_tokens", None)),
        )

    async def complete_tool_turn(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
        options: CompletionOptions,
        cancel_token: CancelToken,
    ) -> ToolTurnResult:
        try:
            return await cancel_token.guard(self._create_tool_turn(system_prompt, messages, tools, options))
        except anthropic.APIError as ex:
            raise ProviderError(_describe(ex)) from ex

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def _create_tool_turn(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
        options: CompletionOptions,
    ) -> ToolTurnResult:
        logger.debug(
            f"Anthropic tool turn: model={options.model}, messages={len(messages)}, tools={len(tools)}"
        )
        response = await self._client.messages.create(
            model=options.model,
            max_tokens=options.max_output_tokens or _DEFAULT_MAX_TOKENS,
            system=system_prompt,
            messages=messages,
            tools=tools,
        )

        assistant_content: list[dict] = []
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                assistant_content.append({"type": "text", "text": block.text})
                text_parts.append(block.text)
            elif block.type == "tool_use":
                assistant_content.append({
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": block.input,
                })
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))

        usage = getattr(response, "usage", None)
        return ToolTurnResult(
            text="".join(text_parts),
            tool_calls=tool_calls,
            assistant_turn={"role": "assistant", "content": assistant_content},
            input_tokens=as_token_count(getattr(usage, "input_tokens", None)),
            output_tokens=as_token_count(getattr(usage, "output_tokens", None)),
        )


def build_anthropic_adapter(api_key: str, *, client: object | None = None) -> ProviderAdapter:
    provider = AnthropicProvider(api_key, client=client)
    return ProviderAdapter(
        kind="anthropic",
        test_connection=provider.test_connection,
        list_models=provider.list_models,
        complete_sync=provider.complete_sync,
        complete_tool_turn=provider.complete_tool_turn,
    )
