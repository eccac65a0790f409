from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from assistant_runs.cancellation import CancelToken
from assistant_runs.events import OnEvent


class ProviderError(Exception):
    """A backend failure reduced to one human-readable message."""

    def __init__(self, message: str):
        super().__init__(message.strip() or "Unknown provider error")

    @property
    def message(self) -> str:
        return str(self)


class ConfigurationError(ProviderError):
    pass


class RemoteStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RemoteStatus.SUCCEEDED, RemoteStatus.FAILED)


@dataclass(frozen=True)
class CompletionOptions:
    model: str
    temperature: float | None = None
    max_output_tokens: int | None = None
    stream: bool = True
    cwd: str | None = None
    full_access: bool = False


@dataclass(frozen=True)
class CompletionResult:
    text: str
    model: str
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict


@dataclass(frozen=True)
class ToolTurnResult:
    text: str
    tool_calls: list[ToolCall]
    assistant_turn: dict
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(frozen=True)
class PollSnapshot:
    status: RemoteStatus
    raw_status: str | None = None
    text: str = ""
    model: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    error_text: str | None = None


@dataclass(frozen=True)
class ConnectionCheck:
    ok: bool
    status: int = 0
    reason: str | None = None


History = list[dict]

TestConnection = Callable[[], Awaitable[ConnectionCheck]]
ListModels = Callable[[], Awaitable[list[str]]]
CompleteSync = Callable[[History, CompletionOptions, CancelToken, OnEvent], Awaitable[CompletionResult]]
CompleteToolTurn = Callable[[str, list[dict], list[dict], CompletionOptions, CancelToken], Awaitable[ToolTurnResult]]
SubmitAsync = Callable[[History, CompletionOptions], Awaitable[str]]
PollAsync = Callable[[str], Awaitable[PollSnapshot]]


@dataclass(frozen=True)
class ProviderAdapter:
    """Capability record for one backend.

    A backend fills in the operations it supports and leaves the rest as
    None; callers dispatch on which operations are present. A backend with
    ``requires_local_tool_loop`` is driven through the text-line tool
    protocol on top of ``complete_sync``.
    """

    kind: str
    test_connection: TestConnection | None = None
    list_models: ListModels | None = None
    complete_sync: CompleteSync | None = None
    complete_tool_turn: CompleteToolTurn | None = None
    submit_async: SubmitAsync | None = None
    poll_async: PollAsync | None = None
    requires_local_tool_loop: bool = False
    job_kind: str | None = None
    extras: dict = field(default_factory=dict)

    @property
    def is_async(self) -> bool:
        return self.submit_async is not None and self.poll_async is not None

    @property
    def is_tool_native(self) -> bool:
        return self.complete_tool_turn is not None


def error_message(error: BaseException, fallback: str = "Unknown provider error") -> str:
    text = str(error).strip()
    return text or fallback
