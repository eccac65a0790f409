from __future__ import annotations

import re

import openai
from loguru import logger
from tenacity import retry

from assistant_runs.cancellation import CancelToken
from assistant_runs.events import OnEvent, ProviderEvent
from assistant_runs.providers.base import (
    CompletionOptions,
    CompletionResult,
    ConnectionCheck,
    PollSnapshot,
    ProviderAdapter,
    ProviderError,
    RemoteStatus,
)
from assistant_runs.providers.common import as_token_count, default_retry_kwargs, to_chat_messages

OPENAI_BACKGROUND_JOB_KIND = "openai_background_response"

# Responses API statuses mapped onto the closed remote status set.
_STATUS_MAP = {
    "queued": RemoteStatus.QUEUED,
    "in_progress": RemoteStatus.RUNNING,
    "completed": RemoteStatus.SUCCEEDED,
    "failed": RemoteStatus.FAILED,
    "cancelled": RemoteStatus.FAILED,
    "incomplete": RemoteStatus.FAILED,
}

_USEFUL_MODEL = re.compile(r"^(gpt|o\d|codex)", re.IGNORECASE)


def map_openai_status(status: str | None) -> RemoteStatus:
    """Unknown statuses are treated as still running; the attempt ceiling bounds them."""
    return _STATUS_MAP.get((status or "").strip().lower(), RemoteStatus.RUNNING)


def _describe(error: openai.APIError) -> str:
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        nested = body.get("error") if isinstance(body.get("error"), dict) else body
        message = nested.get("message") if isinstance(nested, dict) else None
        if isinstance(message, str) and message.strip():
            return message.strip()
    status_code = getattr(error, "status_code", None)
    message = getattr(error, "message", None) or str(error)
    if status_code and not message:
        return f"OpenAI request failed ({status_code})"
    return message or "OpenAI request failed"


def extract_output_text(response: object) -> str:
    output_text = getattr(response, "output_text", None)
    if isinstance(output_text, str) and output_text.strip():
        return output_text

    chunks: list[str] = []
    for item in getattr(response, "output", None) or []:
        item_text = getattr(item, "text", None)
        if isinstance(item_text, str):
            chunks.append(item_text)
        for part in getattr(item, "content", None) or []:
            part_text = getattr(part, "text", None)
            if isinstance(part_text, str):
                chunks.append(part_text)
    return "\n".join(chunks).strip()


def _usage(response: object) -> tuple[int | None, int | None]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return None, None
    input_tokens = as_token_count(getattr(usage, "input_tokens", None))
    output_tokens = as_token_count(getattr(usage, "output_tokens", None))
    return input_tokens, output_tokens


class OpenAIProvider:
    def __init__(self, api_key: str, *, base_url: str | None = None, client: object | None = None):
        self._client = client or openai.AsyncOpenAI(api_key=api_key, base_url=base_url)

    def _request_kwargs(self, history: list[dict], options: CompletionOptions) -> dict:
        kwargs: dict = {"model": options.model, "input": to_chat_messages(history)}
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.max_output_tokens is not None:
            kwargs["max_output_tokens"] = options.max_output_tokens
        return kwargs

    @retry(**default_retry_kwargs((
        openai.RateLimitError,
        openai.APIConnectionError,
        openai.APITimeoutError,
    )))
    async def _create_response(self, **kwargs):
        logger.debug(
            f"OpenAI request: model={kwargs.get('model')}, stream={kwargs.get('stream', False)}, "
            f"background={kwargs.get('background', False)}, messages={len(kwargs.get('input', []))}"
        )
        return await self._client.responses.create(**kwargs)

    async def test_connection(self) -> ConnectionCheck:
        try:
            async for _ in self._client.models.list():
                break
        except openai.APIStatusError as ex:
            return ConnectionCheck(ok=False, status=ex.status_code, reason=_describe(ex))
        except openai.APIError as ex:
            return ConnectionCheck(ok=False, status=0, reason=_describe(ex))
        return ConnectionCheck(ok=True, status=200)

    async def list_models(self) -> list[str]:
        model_ids: list[str] = []
        try:
            async for model in self._client.models.list():
                model_id = getattr(model, "id", "")
                if isinstance(model_id, str) and _USEFUL_MODEL.match(model_id):
                    model_ids.append(model_id)
        except openai.APIError as ex:
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
        except openai.APIError as ex:
            raise ProviderError(_describe(ex)) from ex

    async def _stream_completion(
        self,
        history: list[dict],
        options: CompletionOptions,
        on_event: OnEvent,
    ) -> CompletionResult:
        kwargs = self._request_kwargs(history, options)
        stream = await self._create_response(**kwargs, stream=True)

        text_parts: list[str] = []
        model = options.model
        input_tokens: int | None = None
        output_tokens: int | None = None
        completed_text = ""

        async for event in stream:
            event_type = getattr(event, "type", "")
            if event_type == "response.output_text.delta":
                delta = getattr(event, "delta", "")
                if delta:
                    text_parts.append(delta)
                    on_event(ProviderEvent.delta(delta))
            elif event_type == "response.completed":
                response = getattr(event, "response", None)
                model = getattr(response, "model", None) or model
                input_tokens, output_tokens = _usage(response)
                completed_text = extract_output_text(response)
            elif event_type in ("response.failed", "error"):
                response = getattr(event, "response", None)
                error = getattr(response, "error", None) or event
                message = getattr(error, "message", None)
                raise ProviderError(message or "OpenAI stream reported an error.")

        text = "".join(text_parts) or completed_text
        if not text.strip():
            logger.debug("OpenAI stream produced no text, retrying without streaming")
            response = await self._create_response(**kwargs)
            text = extract_output_text(response)
            model = getattr(response, "model", None) or model
            input_tokens, output_tokens = _usage(response)

        if not text.strip():
            raise ProviderError("OpenAI returned an empty response.")

        logger.debug(f"OpenAI response: model={model}, text_len={len(text)}, output_tokens={output_tokens}")
        return CompletionResult(text=text, model=model, input_tokens=input_tokens, output_tokens=output_tokens)

    async def submit_async(self, history: list[dict], options: CompletionOptions) -> str:
        kwargs = self._request_kwargs(history, options)
        try:
            response = await self._create_response(**kwargs, background=True, store=True)
        except openai.APIError as ex:
            raise ProviderError(_describe(ex)) from ex
        response_id = getattr(response, "id", None)
        if not isinstance(response_id, str) or not response_id:
            raise ProviderError("OpenAI did not return a response id for the background request.")
        logger.info(f"Submitted OpenAI background response {response_id} (status={getattr(response, 'status', None)})")
        return response_id

    async def poll_async(self, handle: str) -> PollSnapshot:
        try:
            response = await self._client.responses.retrieve(handle)
        except openai.APIError as ex:
            raise ProviderError(_describe(ex)) from ex

        raw_status = getattr(response, "status", None)
        status = map_openai_status(raw_status)
        input_tokens, output_tokens = _usage(response)

        error_text: str | None = None
        error = getattr(response, "error", None)
        if error is not None and getattr(error, "message", None):
            error_text = str(error.message)
        elif raw_status == "incomplete":
            details = getattr(response, "incomplete_details", None)
            reason = getattr(details, "reason", None) or "unknown reason"
            error_text = f"OpenAI background response was incomplete ({reason})."

        return PollSnapshot(
            status=status,
            raw_status=raw_status,
            text=extract_output_text(response) if status is RemoteStatus.SUCCEEDED else "",
            model=getattr(response, "model", None),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            error_text=error_text,
        )


def build_openai_adapter(
    api_key: str,
    *,
    base_url: str | None = None,
    background: bool = False,
    client: object | None = None,
) -> ProviderAdapter:
    provider = OpenAIProvider(api_key, base_url=base_url, client=client)
    return ProviderAdapter(
        kind="openai",
        test_connection=provider.test_connection,
        list_models=provider.list_models,
        complete_sync=provider.complete_sync,
        submit_async=provider.submit_async if background else None,
        poll_async=provider.poll_async if background else None,
        job_kind=OPENAI_BACKGROUND_JOB_KIND if background else None,
    )
