from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from assistant_runs.cancellation import CANCELLED_MESSAGE
from assistant_runs.storage import ConversationStore, ProviderRepository, RunRepository, SessionRepository, UsageRecorder
from assistant_runs.storage.models import AssistantRunRecord, MessageRecord
from assistant_runs.storage.usage import estimate_tokens


def failure_text(reason: str) -> str:
    return f"Provider request failed: {reason}"


@dataclass(frozen=True)
class FinalizeOutcome:
    applied: bool
    run: AssistantRunRecord | None
    message: MessageRecord | None = None


class _AlreadyFinalized(Exception):
    pass


class RunFinalizer:
    """Moves a run out of ``running`` exactly once, writing its assistant message.

    Every path (success, cancellation, failure, background recovery) goes
    through here; a run that is already terminal is left untouched and no
    message is written.
    """

    def __init__(
        self,
        store: ConversationStore,
        sessions: SessionRepository,
        runs: RunRepository,
        providers: ProviderRepository,
        usage: UsageRecorder,
    ):
        self._store = store
        self._sessions = sessions
        self._runs = runs
        self._providers = providers
        self._usage = usage

    def complete(
        self,
        run_id: str,
        *,
        provider_id: str,
        text: str,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        prompt_text: str = "",
    ) -> FinalizeOutcome:
        outcome = self._finalize(
            run_id,
            status="completed",
            content=text,
            error_text=None,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        if outcome.applied and outcome.message is not None:
            if input_tokens is None and not prompt_text:
                prompt_text = self._prompt_text(outcome.run)
            self._providers.mark_provider_used(provider_id)
            self._usage.record_usage_event(
                provider_id=provider_id,
                session_id=outcome.message.session_id,
                message_id=outcome.message.id,
                input_tokens=input_tokens if input_tokens is not None else estimate_tokens(prompt_text),
                output_tokens=output_tokens if output_tokens is not None else estimate_tokens(text),
                cost_microunits=0,
            )
        return outcome

    def _prompt_text(self, run: AssistantRunRecord | None) -> str:
        user_message = self._sessions.get_message(run.user_message_id) if run is not None else None
        return user_message.content if user_message is not None else ""

    def cancel(self, run_id: str, *, partial_text: str) -> FinalizeOutcome:
        """Cancelled runs complete with whatever text streamed so far."""
        content = partial_text if partial_text.strip() else CANCELLED_MESSAGE
        return self._finalize(run_id, status="completed", content=content, error_text=CANCELLED_MESSAGE)

    def fail(self, run_id: str, *, reason: str) -> FinalizeOutcome:
        return self._finalize(run_id, status="failed", content=failure_text(reason), error_text=reason)

    def _finalize(
        self,
        run_id: str,
        *,
        status: str,
        content: str,
        error_text: str | None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
    ) -> FinalizeOutcome:
        try:
            with self._store.transaction():
                run = self._runs.get_run(run_id)
                if run is None or run.is_terminal:
                    logger.debug(f"Finalize skipped for run {run_id}: already {run.status if run else 'missing'}")
                    return FinalizeOutcome(applied=False, run=run)

                message = self._sessions.append_message(
                    run.session_id,
                    "assistant",
                    content,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                )
                if not self._runs.finish_run(
                    run_id, status=status, assistant_message_id=message.id, error_text=error_text
                ):
                    raise _AlreadyFinalized()
        except _AlreadyFinalized:
            logger.debug(f"Finalize lost the race for run {run_id}")
            return FinalizeOutcome(applied=False, run=self._runs.get_run(run_id))

        logger.info(f"Run {run_id} finalized as {status}{f' ({error_text})' if error_text else ''}")
        return FinalizeOutcome(applied=True, run=self._runs.get_run(run_id), message=message)
