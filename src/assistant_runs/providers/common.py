from __future__ import annotations

from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

_MAX_ATTEMPTS = 3


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt}/{_MAX_ATTEMPTS})...")


def default_retry_kwargs(exception_types: tuple[type[Exception], ...]) -> dict:
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=2, min=2, max=30),
        "stop": stop_after_attempt(_MAX_ATTEMPTS),
        "before_sleep": _on_retry,
        "reraise": True,
    }


def to_chat_messages(history: list[dict]) -> list[dict]:
    """Chat-completion style messages; tool output is replayed as assistant text."""
    out: list[dict] = []
    for message in history:
        role = message.get("role", "user")
        if role == "tool":
            role = "assistant"
        out.append({"role": role, "content": str(message.get("content", ""))})
    return out


def as_token_count(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None
