from __future__ import annotations

import json
import re
from urllib.parse import urlsplit, urlunsplit

import httpx
from loguru import logger

from assistant_runs.cancellation import CancelToken
from assistant_runs.events import OnEvent, ProviderEvent
from assistant_runs.providers.base import (
    CompletionOptions,
    CompletionResult,
    ConfigurationError,
    ConnectionCheck,
    ProviderAdapter,
    ProviderError,
)
from assistant_runs.providers.common import as_token_count, to_chat_messages

DEFAULT_OLLAMA_BASE_URL = "http://127.0.0.1:11434"

_EMPTY_RESPONSE = "Ollama returned an empty response."


def normalize_base_url(value: str | None) -> str:
    raw = (value or "").strip() or DEFAULT_OLLAMA_BASE_URL
    with_scheme = raw if re.match(r"^[a-z]+://", raw, re.IGNORECASE) else f"http://{raw}"
    parts = urlsplit(with_scheme)
    if not parts.netloc:
        raise ConfigurationError(f'Invalid Ollama URL: "{raw}"')
    return urlunsplit((parts.scheme, parts.netloc, "", "", ""))


def _error_from_payload(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("error", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


async def _read_error(response: httpx.Response) -> str:
    await response.aread()
    try:
        message = _error_from_payload(response.json())
    except ValueError:
        message = None
    return message or f"Ollama request failed ({response.status_code})"


def _describe_transport(error: httpx.HTTPError) -> str:
    return str(error).strip() or "Unable to reach Ollama."


class OllamaProvider:
    """Locally hosted model over the Ollama HTTP API."""

    def __init__(self, base_url: str | None = None, *, transport: httpx.AsyncBaseTransport | None = None,
                 timeout: float = 600.0):
        self._base_url = normalize_base_url(base_url)
        self._transport = transport
        self._timeout = timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self._base_url, transport=self._transport, timeout=self._timeout)

    async def test_connection(self) -> ConnectionCheck:
        try:
            async with self._client() as client:
                response = await client.get("/api/tags")
                if response.is_success:
                    return ConnectionCheck(ok=True, status=response.status_code)
                return ConnectionCheck(ok=False, status=response.status_code, reason=await _read_error(response))
        except httpx.HTTPError as ex:
            return ConnectionCheck(ok=False, status=0, reason=_describe_transport(ex))

    async def list_models(self) -> list[str]:
        try:
            async with self._client() as client:
                response = await client.get("/api/tags")
                if not response.is_success:
                    raise ProviderError(await _read_error(response))
                payload = response.json()
        except httpx.HTTPError as ex:
            raise ProviderError(_describe_transport(ex)) from ex
        except ValueError:
            payload = {}

        entries = payload.get("models") if isinstance(payload, dict) else None
        model_ids: set[str] = set()
        for entry in entries or []:
            if not isinstance(entry, dict):
                continue
            for key in ("name", "model"):
                value = entry.get(key)
                if isinstance(value, str) and value.strip():
                    model_ids.add(value.strip())
                    break
        return sorted(model_ids)

    def _chat_body(self, history: list[dict], options: CompletionOptions) -> dict:
        body: dict = {
            "model": options.model,
            "stream": options.stream,
            "messages": to_chat_messages(history),
        }
        model_options: dict = {}
        if options.temperature is not None:
            model_options["temperature"] = options.temperature
        if options.max_output_tokens is not None:
            model_options["num_predict"] = options.max_output_tokens
        if model_options:
            body["options"] = model_options
        return body

    async def complete_sync(
        self,
        history: list[dict],
        options: CompletionOptions,
        cancel_token: CancelToken,
        on_event: OnEvent,
    ) -> CompletionResult:
        on_event(ProviderEvent.status(
            "Streaming local response..." if options.stream else "Running local response..."
        ))
        body = self._chat_body(history, options)
        logger.debug(f"Ollama request: model={options.model}, stream={options.stream}, messages={len(body['messages'])}")
        try:
            if options.stream:
                return await cancel_token.guard(self._stream_chat(body, options.model, on_event))
            return await cancel_token.guard(self._chat_once(body, options.model))
        except httpx.HTTPError as ex:
            raise ProviderError(_describe_transport(ex)) from ex

    async def _chat_once(self, body: dict, model: str) -> CompletionResult:
        async with self._client() as client:
            response = await client.post("/api/chat", json=body)
            if not response.is_success:
                raise ProviderError(await _read_error(response))
            try:
                payload = response.json()
            except ValueError:
                payload = None

        payload = payload if isinstance(payload, dict) else {}
        error = payload.get("error")
        if isinstance(error, str) and error.strip():
            raise ProviderError(error.strip())
        content = (payload.get("message") or {}).get("content")
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise ProviderError(_EMPTY_RESPONSE)
        return CompletionResult(
            text=text,
            model=payload.get("model") or model,
            input_tokens=as_token_count(payload.get("prompt_eval_count")),
            output_tokens=as_token_count(payload.get("eval_count")),
        )

    async def _stream_chat(self, body: dict, model: str, on_event: OnEvent) -> CompletionResult:
        text_parts: list[str] = []
        input_tokens: int | None = None
        output_tokens: int | None = None

        async with self._client() as client:
            async with client.stream("POST", "/api/chat", json=body) as response:
                if not response.is_success:
                    raise ProviderError(await _read_error(response))
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(chunk, dict):
                        continue
                    error = chunk.get("error")
                    if isinstance(error, str) and error.strip():
                        raise ProviderError(error.strip())
                    if isinstance(chunk.get("model"), str) and chunk["model"].strip():
                        model = chunk["model"]
                    input_tokens = as_token_count(chunk.get("prompt_eval_count")) or input_tokens
                    output_tokens = as_token_count(chunk.get("eval_count")) or output_tokens
                    delta = (chunk.get("message") or {}).get("content")
                    if isinstance(delta, str) and delta:
                        text_parts.append(delta)
                        on_event(ProviderEvent.delta(delta))

        text = "".join(text_parts)
        if not text.strip():
            raise ProviderError(_EMPTY_RESPONSE)
        return CompletionResult(text=text, model=model, input_tokens=input_tokens, output_tokens=output_tokens)


def build_ollama_adapter(
    base_url: str | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderAdapter:
    provider = OllamaProvider(base_url, transport=transport)
    return ProviderAdapter(
        kind="local",
        test_connection=provider.test_connection,
        list_models=provider.list_models,
        complete_sync=provider.complete_sync,
        requires_local_tool_loop=True,
        extras={"base_url": provider.base_url},
    )
