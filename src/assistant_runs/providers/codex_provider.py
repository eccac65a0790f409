from __future__ import annotations

import asyncio
import json
import os
import re
import tempfile
import uuid
from pathlib import Path

from loguru import logger

from assistant_runs.cancellation import CancelToken
from assistant_runs.events import OnEvent, ProviderEvent, TraceKind
from assistant_runs.providers.base import (
    CompletionOptions,
    CompletionResult,
    ConfigurationError,
    ConnectionCheck,
    ProviderAdapter,
    ProviderError,
)
from assistant_runs.providers.common import as_token_count

_ANSI = re.compile(r"\x1B\[[0-9;]*m")

_CANDIDATE_BINARIES = (
    "/Applications/Codex.app/Contents/Resources/codex",
    "/opt/homebrew/bin/codex",
    "/usr/local/bin/codex",
    "/usr/bin/codex",
)

_FALLBACK_MODEL = "gpt-5-codex"

_NOT_FOUND = "Codex CLI not found. Set CodexBinary in config.json or CODEX_BIN to the codex executable."
_NOT_LOGGED_IN = "ChatGPT subscription is not connected yet. Run `codex login`, then try again."

_STREAM_LIMIT = 4 * 1024 * 1024


def strip_ansi(text: str) -> str:
    return _ANSI.sub("", text)


def resolve_codex_command(configured: str | None = None) -> str:
    candidates = [c for c in (configured, os.environ.get("CODEX_BIN"), *_CANDIDATE_BINARIES) if c]
    for candidate in candidates:
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return "codex"


def classify_reasoning(text: str) -> TraceKind:
    if re.search(r"\b(plan|step|first|next|then|finally|roadmap|todo)\b", text, re.IGNORECASE):
        return "plan"
    return "thought"


def classify_action(item_type: str, item_name: str, text: str) -> str:
    combo = f"{item_type} {item_name}".lower()
    first_line = text.split("\n", 1)[0]

    if re.search(r"write|patch|edit|update|apply", combo) or re.search(r"\*\*\*\s+Update\s+File:", text, re.I):
        return "file-edit"
    if re.search(r"create|add|mkdir", combo) or re.search(r"\*\*\*\s+Add\s+File:", text, re.I):
        return "file-create"
    if re.search(r"delete|remove|rm\b", combo) or re.search(r"\*\*\*\s+Delete\s+File:", text, re.I):
        return "file-delete"
    if re.search(r"read|cat|head|tail|view", combo):
        return "file-read"
    if re.search(r"search|grep|rg\b|find|glob|list_dir|ls\b", combo):
        return "search"
    if re.search(r"shell|exec|command|bash|run|terminal", combo):
        return "command"
    if re.search(r"output|result", item_type, re.I) or re.match(r"exit:\s*", first_line, re.I):
        return "command-result"
    if re.match(r"Step\s+\d+\s+command:", first_line, re.I):
        return "command"
    return "generic"


def extract_item_text(item: dict) -> str:
    for key in ("text", "message", "output"):
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value

    name = item.get("name") if isinstance(item.get("name"), str) else ""
    args = item.get("arguments")
    if name and isinstance(args, str):
        try:
            parsed = json.loads(args)
        except json.JSONDecodeError:
            return f"{name}: {args}"
        if isinstance(parsed, dict):
            for keys in (("path", "file", "filename"), ("command", "cmd"), ("query", "pattern", "search")):
                for key in keys:
                    if isinstance(parsed.get(key), str):
                        return f"{name}: {parsed[key]}"
        return f"{name}: {args}"
    return name


def build_codex_prompt(history: list[dict]) -> str:
    transcript = "\n\n".join(
        f"{str(message.get('role', 'user')).upper()}:\n{message.get('content', '')}" for message in history
    )
    return "\n".join([
        "You are a coding assistant.",
        "Continue this conversation and respond as the assistant to the latest user message.",
        "Keep response focused and actionable.",
        "",
        transcript,
        "",
        "ASSISTANT:",
    ])


class CodexEventParser:
    """Turns ``codex exec --json`` lines into provider events."""

    def __init__(self, on_event: OnEvent):
        self._on_event = on_event
        self.assistant_text = ""
        self.input_tokens: int | None = None
        self.output_tokens: int | None = None

    def feed(self, line: str) -> None:
        trimmed = line.strip()
        if not trimmed.startswith("{"):
            return
        try:
            event = json.loads(trimmed)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return

        event_type = event.get("type")
        if event_type == "turn.started":
            self._on_event(ProviderEvent.status("Planning..."))
            return
        if event_type == "turn.completed" and isinstance(event.get("usage"), dict):
            self.input_tokens = as_token_count(event["usage"].get("input_tokens"))
            self.output_tokens = as_token_count(event["usage"].get("output_tokens"))
            self._on_event(ProviderEvent.status("Finalizing response..."))
            return
        item = event.get("item")
        if event_type != "item.completed" or not isinstance(item, dict):
            return

        item_type = item.get("type") if isinstance(item.get("type"), str) else ""
        item_name = item.get("name") if isinstance(item.get("name"), str) else ""
        text = extract_item_text(item)
        if not text and not item_name and not item_type:
            return

        if item_type == "reasoning":
            self._on_event(ProviderEvent.traced(classify_reasoning(text), text))
        elif item_type == "agent_message":
            self.assistant_text += text
            self._on_event(ProviderEvent.delta(text))
        else:
            trace_text = text or item_name or item_type
            self._on_event(ProviderEvent.traced(
                "action", trace_text, classify_action(item_type, item_name, trace_text)
            ))


class CodexProvider:
    """ChatGPT subscription access through the local ``codex`` CLI."""

    def __init__(self, binary: str | None = None, *, codex_home: str | None = None):
        self._binary = resolve_codex_command(binary)
        self._codex_home = Path(codex_home or os.environ.get("CODEX_HOME") or Path.home() / ".codex")

    async def _spawn(self, *args: str) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError as ex:
            raise ConfigurationError(_NOT_FOUND) from ex
        except OSError as ex:
            raise ProviderError(f"Failed to run Codex CLI: {ex}") from ex

    async def login_status(self) -> tuple[bool, str]:
        try:
            proc = await self._spawn("login", "status")
        except ProviderError as ex:
            return False, ex.message
        stdout, stderr = await proc.communicate()
        output = strip_ansi(f"{stdout.decode(errors='replace')}\n{stderr.decode(errors='replace')}".strip())
        logged_in = proc.returncode == 0 and re.search(r"logged in", output, re.IGNORECASE) is not None
        return logged_in, output or ("Logged in" if logged_in else "Not logged in")

    async def test_connection(self) -> ConnectionCheck:
        logged_in, detail = await self.login_status()
        if logged_in:
            return ConnectionCheck(ok=True, status=200)
        return ConnectionCheck(ok=False, status=0, reason=detail)

    async def list_models(self) -> list[str]:
        cache_path = self._codex_home / "models_cache.json"
        try:
            payload = json.loads(cache_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            payload = {}

        entries = []
        for entry in (payload.get("models") if isinstance(payload, dict) else None) or []:
            if not isinstance(entry, dict) or not isinstance(entry.get("slug"), str) or not entry["slug"]:
                continue
            priority = entry.get("priority")
            entries.append((
                entry["slug"],
                entry.get("visibility"),
                priority if isinstance(priority, (int, float)) else float("inf"),
            ))
        if not entries:
            return [_FALLBACK_MODEL]

        visible = [e for e in entries if e[1] == "list"]
        basis = sorted(visible or entries, key=lambda e: (e[2], e[0]))
        return list(dict.fromkeys(slug for slug, _, _ in basis))

    def build_args(self, history: list[dict], options: CompletionOptions, message_path: str) -> list[str]:
        args = ["exec", "--skip-git-repo-check", "--json", "--output-last-message", message_path]
        if options.full_access:
            args.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            args.extend(["--sandbox", "workspace-write"])
        if options.model:
            args.extend(["--model", options.model])
        if options.cwd:
            args.extend(["-C", options.cwd])
        args.append(build_codex_prompt(history))
        return args

    async def complete_sync(
        self,
        history: list[dict],
        options: CompletionOptions,
        cancel_token: CancelToken,
        on_event: OnEvent,
    ) -> CompletionResult:
        logged_in, _ = await cancel_token.guard(self.login_status())
        if not logged_in:
            raise ConfigurationError(_NOT_LOGGED_IN)

        on_event(ProviderEvent.status(
            "Running with root-level access..." if options.full_access else "Running in scoped workspace mode..."
        ))
        message_path = os.path.join(tempfile.gettempdir(), f"assistant-runs-codex-{uuid.uuid4()}.txt")
        try:
            return await cancel_token.guard(self._exec(history, options, message_path, on_event))
        finally:
            try:
                os.unlink(message_path)
            except FileNotFoundError:
                pass

    async def _exec(
        self,
        history: list[dict],
        options: CompletionOptions,
        message_path: str,
        on_event: OnEvent,
    ) -> CompletionResult:
        parser = CodexEventParser(on_event)
        proc = await self._spawn(*self.build_args(history, options, message_path))
        logger.debug(f"codex exec started: pid={proc.pid}, model={options.model}, cwd={options.cwd}")

        stdout_chunks: list[str] = []
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            async for raw_line in proc.stdout:
                line = raw_line.decode(errors="replace")
                stdout_chunks.append(line)
                parser.feed(line)
            stderr = (await stderr_task).decode(errors="replace")
            code = await proc.wait()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            stderr_task.cancel()

        if code != 0:
            stdout = "".join(stdout_chunks)
            raise ProviderError(strip_ansi(stderr.strip() or stdout.strip() or f"codex exec failed with code {code}"))

        try:
            text = Path(message_path).read_text(encoding="utf-8").strip()
        except OSError:
            text = ""
        if not text:
            text = parser.assistant_text.strip()
        if not text:
            raise ProviderError("codex exec returned empty output")

        return CompletionResult(
            text=text,
            model=options.model or "codex",
            input_tokens=parser.input_tokens,
            output_tokens=parser.output_tokens,
        )


def build_codex_adapter(binary: str | None = None, *, codex_home: str | None = None) -> ProviderAdapter:
    provider = CodexProvider(binary, codex_home=codex_home)
    return ProviderAdapter(
        kind="codex",
        test_connection=provider.test_connection,
        list_models=provider.list_models,
        complete_sync=provider.complete_sync,
    )
