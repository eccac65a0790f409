from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass

from assistant_runs.cancellation import CANCELLED_MESSAGE, CancellationRegistry, CancelToken, RunCancelledError
from assistant_runs.events import EventPublisher, ProviderEvent, StreamEvent
from assistant_runs.finalization import FinalizeOutcome, RunFinalizer, failure_text
from assistant_runs.jobs.background_jobs import BackgroundJobPayload, now_ms
from assistant_runs.local_protocol import LocalToolLoop
from assistant_runs.logging_config import run_logger
from assistant_runs.native_tool_loop import NativeToolLoop
from assistant_runs.providers.base import (
    CompletionOptions,
    CompletionResult,
    ConfigurationError,
    ProviderAdapter,
    ProviderError,
    error_message,
)
from assistant_runs.providers.registry import ProviderFactory, resolve_model
from assistant_runs.storage import (
    DuplicateRunError,
    JobRepository,
    ProviderRepository,
    RunRepository,
    SessionRepository,
)
from assistant_runs.storage.models import AssistantRunRecord, MessageRecord, SessionRecord
from assistant_runs.titles import generate_title, should_generate_title
from assistant_runs.tools.command_policy import AccessMode
from assistant_runs.tools.run_shell_tool import RunShellTool, ToolContext
from assistant_runs.tools.shell_tool import ShellToolExecutor


def make_stream_id() -> str:
    return f"stream_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass(frozen=True)
class RunRequest:
    session_id: str
    text: str
    idempotency_key: str
    stream_id: str | None = None
    model: str | None = None
    access_mode: AccessMode = "scoped"
    workspace_id: str | None = None
    cancel_token: CancelToken | None = None


@dataclass(frozen=True)
class RunResult:
    run: AssistantRunRecord
    user_message: MessageRecord | None
    assistant_message: MessageRecord | None
    session: SessionRecord | None = None
    accepted: bool = False
    duplicate: bool = False

    @property
    def stream_id(self) -> str:
        return self.run.stream_id


@dataclass(frozen=True)
class OrchestratorLimits:
    history_window: int = 30
    local_tool_max_steps: int = 24
    local_plan_attempts: int = 2
    local_max_plan_steps: int = 12
    default_cwd: str | None = None


class RunOrchestrator:
    """Turns one user message into one durable run.

    The user message is written before any backend call. The run then
    takes exactly one of three exits: completed with the answer, completed
    with partial text after cancellation, or failed with a failure notice.
    Runs on an asynchronous backend are handed to a background job and
    return immediately as accepted.
    """

    def __init__(
        self,
        *,
        sessions: SessionRepository,
        runs: RunRepository,
        jobs: JobRepository,
        providers: ProviderRepository,
        factory: ProviderFactory,
        finalizer: RunFinalizer,
        events: EventPublisher,
        executor: ShellToolExecutor,
        cancellations: CancellationRegistry | None = None,
        limits: OrchestratorLimits | None = None,
    ):
        self._sessions = sessions
        self._runs = runs
        self._jobs = jobs
        self._providers = providers
        self._factory = factory
        self._finalizer = finalizer
        self._events = events
        self._executor = executor
        self._cancellations = cancellations or CancellationRegistry()
        self._limits = limits or OrchestratorLimits()

    @property
    def cancellations(self) -> CancellationRegistry:
        return self._cancellations

    def cancel(self, stream_id: str) -> bool:
        """Signal the run streaming on ``stream_id``. Unknown ids are ignored."""
        cancelled = self._cancellations.cancel(stream_id)
        if cancelled:
            run_logger(stream_id, "-").info("Cancellation requested")
        return cancelled

    def _emit(self, stream_id: str, session_id: str, event_type: str, text: str | None = None, trace=None) -> None:
        self._events.publish(StreamEvent(stream_id=stream_id, session_id=session_id, type=event_type, text=text,
                                         trace=trace))

    def _existing_result(self, run: AssistantRunRecord) -> RunResult:
        return RunResult(
            run=run,
            user_message=self._sessions.get_message(run.user_message_id),
            assistant_message=self._sessions.get_message(run.assistant_message_id),
            session=self._sessions.get_session(run.session_id),
            accepted=not run.is_terminal,
            duplicate=True,
        )

    async def start_run(self, request: RunRequest) -> RunResult:
        if not request.idempotency_key or not request.idempotency_key.strip():
            raise ValueError("An idempotency key is required to start a run")
        session = self._sessions.get_session(request.session_id)
        if session is None:
            raise ValueError(f"Session not found: {request.session_id}")

        existing = self._runs.get_by_idempotency_key(session.id, request.idempotency_key)
        if existing is not None:
            run_logger(existing.stream_id, session.id).info(
                f"Duplicate submission for idempotency key {request.idempotency_key!r}; returning run {existing.id}"
            )
            return self._existing_result(existing)

        stream_id = request.stream_id or make_stream_id()
        try:
            run = self._runs.create_run(
                session_id=session.id, idempotency_key=request.idempotency_key, stream_id=stream_id
            )
        except DuplicateRunError as ex:
            return self._existing_result(ex.existing)

        token = self._cancellations.create(stream_id, request.cancel_token)
        try:
            return await self._drive(run, session, request, token)
        finally:
            self._cancellations.release(stream_id, token)

    async def _drive(
        self,
        run: AssistantRunRecord,
        session: SessionRecord,
        request: RunRequest,
        token: CancelToken,
    ) -> RunResult:
        stream_id = run.stream_id
        log = run_logger(stream_id, session.id)
        self._emit(stream_id, session.id, "status", "Queued")

        user_message = self._sessions.append_message(session.id, "user", request.text)
        self._runs.mark_user_message(run.id, user_message.id)
        log.info(f"Run {run.id} started")

        try:
            resolved = await self._factory.resolve(session.provider_id)
            model = resolve_model(
                resolved.record,
                self._providers,
                requested_model=request.model,
                model_profile_id=session.model_profile_id,
            )
        except ProviderError as ex:
            log.error(f"Run {run.id} configuration error: {ex.message}")
            return self._finish_failed(run, session, user_message, ex.message)
        except Exception as ex:
            log.exception(f"Run {run.id} failed while resolving its provider")
            return self._finish_failed(run, session, user_message, error_message(ex))

        workspace = self._providers.get_workspace(request.workspace_id or session.workspace_id)
        history = self._sessions.load_history(session.id, window=self._limits.history_window)
        options = CompletionOptions(
            model=model or "",
            cwd=workspace.root_path if workspace else None,
            full_access=request.access_mode == "root",
        )
        adapter = resolved.adapter

        if adapter.is_async:
            return await self._submit_background(run, session, user_message, adapter, history, options, token)

        partial: list[str] = []

        def on_event(event: ProviderEvent) -> None:
            if event.type == "text_delta" and event.text:
                partial.append(event.text)
            self._emit(stream_id, session.id, event.type, event.text, event.trace)

        tool = RunShellTool(
            self._executor,
            ToolContext(workspace=workspace, access_mode=request.access_mode, default_cwd=self._limits.default_cwd),
        )
        try:
            completion = await self._dispatch(adapter, tool, history, options, token, on_event)
        except (RunCancelledError, asyncio.CancelledError) as ex:
            outcome = self._finalizer.cancel(run.id, partial_text="".join(partial))
            log.info(f"Run {run.id} cancelled after {len(partial)} text delta(s)")
            self._emit(stream_id, session.id, "status", CANCELLED_MESSAGE)
            self._emit(stream_id, session.id, "done")
            if isinstance(ex, asyncio.CancelledError):
                raise
            return self._result(outcome, user_message, session)
        except ProviderError as ex:
            log.error(f"Run {run.id} failed: {ex.message}")
            return self._finish_failed(run, session, user_message, ex.message)
        except Exception as ex:
            log.exception(f"Run {run.id} failed with an unexpected error")
            return self._finish_failed(run, session, user_message, error_message(ex))

        outcome = self._finalizer.complete(
            run.id,
            provider_id=resolved.record.id,
            text=completion.text,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            prompt_text=request.text,
        )
        session = self._maybe_retitle(session, request.text) if outcome.applied else session
        log.info(f"Run {run.id} completed (model={completion.model}, chars={len(completion.text)})")
        self._emit(stream_id, session.id, "done")
        return self._result(outcome, user_message, session)

    async def _dispatch(
        self,
        adapter: ProviderAdapter,
        tool: RunShellTool,
        history: list[dict],
        options: CompletionOptions,
        token: CancelToken,
        on_event,
    ) -> CompletionResult:
        if adapter.requires_local_tool_loop and adapter.complete_sync is not None:
            loop = LocalToolLoop(
                adapter.complete_sync,
                tool,
                max_steps=self._limits.local_tool_max_steps,
                plan_attempts=self._limits.local_plan_attempts,
                max_plan_steps=self._limits.local_max_plan_steps,
            )
            return await loop.run(history, options, token, on_event)
        if adapter.complete_tool_turn is not None:
            native = NativeToolLoop(adapter.complete_tool_turn, tool, max_steps=self._limits.local_tool_max_steps)
            return await native.run(history, options, token, on_event)
        if adapter.complete_sync is not None:
            return await adapter.complete_sync(history, options, token, on_event)
        raise ConfigurationError(f"Provider '{adapter.kind}' cannot produce completions.")

    async def _submit_background(
        self,
        run: AssistantRunRecord,
        session: SessionRecord,
        user_message: MessageRecord,
        adapter: ProviderAdapter,
        history: list[dict],
        options: CompletionOptions,
        token: CancelToken,
    ) -> RunResult:
        stream_id = run.stream_id
        log = run_logger(stream_id, session.id)
        self._emit(stream_id, session.id, "status", "Submitting background request...")
        try:
            handle = await token.guard(adapter.submit_async(history, options))
            payload = BackgroundJobPayload(
                response_handle=handle,
                provider_id=session.provider_id,
                session_id=session.id,
                run_id=run.id,
                idempotency_key=run.idempotency_key,
                model=options.model,
                status="queued",
                updated_at=now_ms(),
            )
            job = self._jobs.create_job(adapter.job_kind or f"{adapter.kind}_background", payload.to_dict())
        except (RunCancelledError, asyncio.CancelledError) as ex:
            outcome = self._finalizer.cancel(run.id, partial_text="")
            self._emit(stream_id, session.id, "status", CANCELLED_MESSAGE)
            self._emit(stream_id, session.id, "done")
            if isinstance(ex, asyncio.CancelledError):
                raise
            return self._result(outcome, user_message, session)
        except ProviderError as ex:
            log.error(f"Run {run.id} background submission failed: {ex.message}")
            return self._finish_failed(run, session, user_message, ex.message)
        except Exception as ex:
            log.exception(f"Run {run.id} background submission failed with an unexpected error")
            return self._finish_failed(run, session, user_message, error_message(ex))

        log.info(f"Run {run.id} accepted; background job {job.id} tracks response {handle}")
        self._emit(stream_id, session.id, "status", "Accepted; waiting for background completion.")
        self._emit(stream_id, session.id, "done")
        return RunResult(
            run=self._runs.get_run(run.id) or run,
            user_message=user_message,
            assistant_message=None,
            session=session,
            accepted=True,
        )

    def _finish_failed(
        self,
        run: AssistantRunRecord,
        session: SessionRecord,
        user_message: MessageRecord,
        reason: str,
    ) -> RunResult:
        outcome = self._finalizer.fail(run.id, reason=reason)
        self._emit(run.stream_id, session.id, "error", failure_text(reason))
        self._emit(run.stream_id, session.id, "done")
        return self._result(outcome, user_message, session)

    def _result(self, outcome: FinalizeOutcome, user_message: MessageRecord, session: SessionRecord) -> RunResult:
        run = outcome.run
        assert run is not None
        return RunResult(
            run=run,
            user_message=user_message,
            assistant_message=outcome.message or self._sessions.get_message(run.assistant_message_id),
            session=session,
        )

    def _maybe_retitle(self, session: SessionRecord, user_text: str) -> SessionRecord:
        user_count = self._sessions.count_messages(session.id, role="user")
        if not should_generate_title(session.title, user_count, user_text):
            return session
        title = generate_title(user_text)
        if not title or title == session.title:
            return session
        return self._sessions.set_session_title(session.id, title)
