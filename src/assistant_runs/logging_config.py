import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_NO_RUN = "-"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


def _bound_to_run(record) -> bool:
    return record["extra"].get("stream_id", _NO_RUN) != _NO_RUN


class ConsoleLogConsumer:
    """stderr sink. With ``runs_only`` it shows just the lines written through ``run_logger``."""

    def __init__(self, runs_only: bool = False):
        self._runs_only = runs_only

    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            filter=_bound_to_run if self._runs_only else None,
            format=(
                "<level>{level:<8}</level> | <magenta>{extra[stream_id]}</magenta> | "
                "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
            ),
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level}{', runs only' if self._runs_only else ''})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = ".assistant_runs/assistant_runs.log",
        rotation: str = "10 MB",
        retention: int = 3,
        runs_only: bool = False,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._runs_only = runs_only

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            filter=_bound_to_run if self._runs_only else None,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[stream_id]} | {extra[session_id]} | "
                "{name}:{function}:{line} - {message}"
            ),
            rotation=self._rotation,
            retention=self._retention,
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level}{', runs only' if self._runs_only else ''})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

# Quiet console, full file.
_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING"},
    {"type": "file"},
]


def run_logger(stream_id: str, session_id: str):
    """Logger bound to one run, so every line it writes carries the stream and session."""
    return logger.bind(stream_id=stream_id, session_id=session_id)


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all sinks with the configured consumers.

    Each entry is ``{"type": ..., "level": ...}`` plus constructor options for
    that consumer (``path``, ``rotation``, ``retention``, ``runs_only``).
    Unknown types are skipped with a warning. Returns one description per
    registered consumer.
    """
    logger.remove()
    logger.configure(extra={"stream_id": _NO_RUN, "session_id": _NO_RUN})

    descriptions: list[str] = []
    for config in _DEFAULT_CONSUMERS if consumers is None else consumers:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        sink_level = config.get("level", level)
        consumer = cls(**{k: v for k, v in config.items() if k not in ("type", "level")})
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
