import asyncio
import signal
import sys
from uuid import uuid4

from dotenv import load_dotenv
from loguru import logger

from assistant_runs.app_config import load_json_config, parse_app_config
from assistant_runs.bootstrap import AppRuntime, bootstrap_runtime
from assistant_runs.events import StreamEvent
from assistant_runs.orchestrator import RunRequest, make_stream_id
from assistant_runs.providers.base import ConfigurationError, ProviderError

_HELP = """Commands:
  /help               show this help
  /providers          list configured providers
  /models             list models for the session's provider
  /check              test the connection to the session's provider
  /root               toggle full (root) shell access for following runs
  /new                start a new session
  exit | quit         leave
Press Ctrl+C while a run is streaming to cancel it."""


def _print_event(event: StreamEvent) -> None:
    if event.type == "text_delta" and event.text:
        print(event.text, end="", flush=True)
    elif event.type == "status" and event.text:
        print(f"\n[{event.text}]", flush=True)
    elif event.type == "trace" and event.trace is not None:
        label = event.trace.action_kind or event.trace.trace_kind
        print(f"\n  ({label}) {event.trace.text}", flush=True)
    elif event.type == "error" and event.text:
        print(f"\n{event.text}", flush=True)


async def _run_once(runtime: AppRuntime, session_id: str, text: str, access_mode: str) -> None:
    stream_id = make_stream_id()
    subscription = runtime.events.subscribe(stream_id)
    task = asyncio.create_task(
        runtime.orchestrator.start_run(
            RunRequest(
                session_id=session_id,
                text=text,
                idempotency_key=uuid4().hex,
                stream_id=stream_id,
                access_mode=access_mode,
            )
        )
    )
    task.add_done_callback(lambda _: subscription.close())

    loop = asyncio.get_running_loop()
    handles_sigint = sys.platform != "win32"
    if handles_sigint:
        loop.add_signal_handler(signal.SIGINT, runtime.orchestrator.cancel, stream_id)
    try:
        async for event in subscription:
            _print_event(event)
        result = await task
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)

    if result.accepted:
        print(f"\n[run {result.run.id} continues in the background]")
    elif result.run.status == "failed":
        logger.warning(f"Run {result.run.id} failed: {result.run.error_text}")
    print()


async def _handle_command(runtime: AppRuntime, session_id: str, command: str) -> str:
    """Returns the session id to continue with."""
    session = runtime.sessions.get_session(session_id)
    provider_id = session.provider_id if session else runtime.default_provider_id

    if command == "/help":
        print(_HELP)
    elif command == "/providers":
        for provider in runtime.providers.list_providers():
            marker = "*" if provider.id == provider_id else " "
            print(f" {marker} {provider.id} ({provider.type}, {provider.auth_kind})")
    elif command in ("/models", "/check"):
        try:
            resolved = await runtime.factory.resolve(provider_id)
        except ConfigurationError as ex:
            print(ex.message)
            return session_id
        try:
            if command == "/models":
                if resolved.adapter.list_models is None:
                    print("This provider cannot list models.")
                    return session_id
                models = await resolved.adapter.list_models()
                runtime.providers.replace_model_profiles(resolved.record.id, models)
                for model in models:
                    print(f"  - {model}")
            else:
                if resolved.adapter.test_connection is None:
                    print("This provider cannot be tested.")
                    return session_id
                check = await resolved.adapter.test_connection()
                print("Connection ok." if check.ok else f"Connection failed: {check.reason}")
        except ProviderError as ex:
            print(ex.message)
    elif command == "/new":
        session = runtime.sessions.create_session(provider_id=provider_id)
        print(f"Session: {session.id}")
        return session.id
    else:
        print(f"Unknown command: {command}. Type /help for commands.")
    return session_id


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    runtime = bootstrap_runtime(app)

    if not runtime.default_provider_id:
        logger.error("No provider configured. Add a Providers entry to config.json.")
        runtime.close()
        sys.exit(1)

    session = runtime.sessions.create_session(provider_id=runtime.default_provider_id)
    runtime.scheduler.start()
    access_mode = "scoped"

    print("assistant-runs (type 'exit' to quit, '/help' for commands)")
    print(f"Provider: {runtime.default_provider_id}")
    print(f"Session: {session.id}")
    if app.working_directory:
        print(f"Working directory: {app.working_directory}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    session_id = session.id
    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            if trimmed == "/root":
                access_mode = "scoped" if access_mode == "root" else "root"
                print(f"Shell access: {access_mode}")
                continue
            if trimmed.startswith("/"):
                session_id = await _handle_command(runtime, session_id, trimmed)
                continue

            try:
                await _run_once(runtime, session_id, trimmed, access_mode)
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        await runtime.scheduler.stop()
        runtime.close()


def _install_transport_cleanup_hook() -> None:
    """Suppress 'unclosed transport' noise from asyncio subprocess cleanup on Windows.

    Shell tool subprocesses that are killed on cancel or timeout can leave
    proactor transports whose __del__ fires after the pipes are closed.
    """
    _default_hook = sys.unraisablehook

    def _hook(unraisable) -> None:
        obj_str = str(unraisable.object) if unraisable.object is not None else ""
        if "Transport" in obj_str and isinstance(unraisable.exc_value, (ResourceWarning, ValueError)):
            return  # suppress
        _default_hook(unraisable)

    sys.unraisablehook = _hook


def run() -> None:
    _install_transport_cleanup_hook()
    asyncio.run(main())


if __name__ == "__main__":
    run()
