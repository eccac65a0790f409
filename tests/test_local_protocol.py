import asyncio
import unittest

from assistant_runs.cancellation import CancelToken, RunCancelledError
from assistant_runs.local_protocol import (
    FALLBACK_PLAN_STEP,
    Checklist,
    LocalToolLoop,
    ProtocolError,
    StepBudgetExceededError,
    parse_final,
    parse_plan,
    parse_step_done,
    parse_tool_call,
)
from assistant_runs.providers.base import CompletionOptions, CompletionResult
from assistant_runs.storage.models import WorkspaceRecord
from assistant_runs.tools.run_shell_tool import ToolContext
from assistant_runs.tools.shell_tool import ShellResult


class _ScriptedBackend:
    """complete_sync stand-in that replays canned replies; the last one repeats."""

    def __init__(self, replies: list[str], on_call=None):
        self._replies = replies
        self._on_call = on_call
        self.calls: list[list[dict]] = []

    async def __call__(self, history, options, cancel_token, on_event):
        self.calls.append(list(history))
        if self._on_call is not None:
            self._on_call(len(self.calls))
        reply = self._replies[min(len(self.calls) - 1, len(self._replies) - 1)]
        return CompletionResult(text=reply, model=options.model, input_tokens=3, output_tokens=2)


class _FakeShellTool:
    def __init__(self, refuse: str = ""):
        self.context = ToolContext(
            workspace=WorkspaceRecord(id="w1", name="repo", root_path="/srv/repo", trust_level="trusted")
        )
        self._refuse = refuse
        self.commands: list[tuple[str, str | None]] = []

    def resolve_cwd(self, requested):
        return requested or "/srv/repo"

    async def execute_or_refuse(self, arguments, cancel_token):
        self.commands.append((arguments["command"], arguments.get("cwd")))
        if self._refuse:
            return None, self._refuse
        return ShellResult(
            ok=True, command=arguments["command"], cwd="/srv/repo", exit_code=0, timed_out=False,
            stdout="README.md\n", stderr="",
        ), ""


def _run(backend, tool, *, token=None, max_steps=24, events=None):
    loop = LocalToolLoop(backend, tool, max_steps=max_steps)
    sink = events if events is not None else []
    return asyncio.run(loop.run(
        [{"role": "user", "content": "list the repo"}],
        CompletionOptions(model="llama3.2"),
        token or CancelToken(),
        sink.append,
    ))


class ProtocolParsingTests(unittest.TestCase):
    def test_parse_plan_dedupes_and_caps(self) -> None:
        steps = parse_plan('PLAN {"steps": ["a", " a ", "b", "", 3, "c"]}', max_steps=2)
        self.assertEqual(["a", "b"], steps)

    def test_parse_plan_empty_steps_gets_fallback(self) -> None:
        self.assertEqual([FALLBACK_PLAN_STEP], parse_plan('PLAN {"steps": []}'))

    def test_prefix_must_start_a_line(self) -> None:
        self.assertIsNone(parse_plan('Here is my PLAN {"steps": ["a"]}'))
        self.assertEqual(["a"], parse_plan('Sure.\n  PLAN {"steps": ["a"]} trailing text'))

    def test_parse_tool_call(self) -> None:
        call = parse_tool_call('TOOL_CALL {"name": "run_shell", "arguments": {"command": " ls ", "cwd": " "}}')
        self.assertEqual("ls", call.command)
        self.assertIsNone(call.cwd)
        self.assertIsNone(parse_tool_call('TOOL_CALL {"name": "read_file", "arguments": {"command": "ls"}}'))
        self.assertIsNone(parse_tool_call('TOOL_CALL {"name": "run_shell", "arguments": {"command": ""}}'))

    def test_parse_step_done_rejects_bad_indices(self) -> None:
        self.assertEqual(0, parse_step_done('STEP_DONE {"index": 0}').index)
        self.assertEqual(2, parse_step_done('STEP_DONE {"index": 2.0, "note": "ok"}').index)
        self.assertIsNone(parse_step_done('STEP_DONE {"index": true}'))
        self.assertIsNone(parse_step_done('STEP_DONE {"index": -1}'))
        self.assertIsNone(parse_step_done('STEP_DONE {"index": "1"}'))

    def test_parse_final(self) -> None:
        self.assertEqual("All good.", parse_final('FINAL {"message": " All good. "}'))
        self.assertIsNone(parse_final('FINAL {"message": ""}'))
        self.assertIsNone(parse_final("FINAL done"))

    def test_checklist_render_and_progress(self) -> None:
        checklist = Checklist(["inspect", "fix"])
        self.assertEqual(0, checklist.next_incomplete())
        self.assertFalse(checklist.mark(2))
        self.assertTrue(checklist.mark(0))
        self.assertEqual("[x] 0. inspect\n[ ] 1. fix", checklist.render())
        checklist.mark(1)
        self.assertTrue(checklist.all_done)
        self.assertIsNone(checklist.next_incomplete())


class LocalToolLoopTests(unittest.TestCase):
    def test_final_is_gated_on_the_checklist(self) -> None:
        backend = _ScriptedBackend([
            'PLAN {"steps": ["a", "b", "c"]}',
            'STEP_DONE {"index": 0}',
            'FINAL {"message": "too early"}',
            'STEP_DONE {"index": 1}',
            'STEP_DONE {"index": 2}',
            'FINAL {"message": "done"}',
        ])

        result = _run(backend, _FakeShellTool())

        self.assertEqual("done", result.text)
        self.assertEqual(6, len(backend.calls))
        rejection = backend.calls[3][-2]
        self.assertEqual("system", rejection["role"])
        self.assertTrue(rejection["content"].startswith("Cannot finalize yet."))
        self.assertEqual((18, 12), (result.input_tokens, result.output_tokens))

    def test_tool_results_are_fed_back(self) -> None:
        tool = _FakeShellTool()
        backend = _ScriptedBackend([
            'PLAN {"steps": ["list files"]}',
            'TOOL_CALL {"name": "run_shell", "arguments": {"command": "ls", "cwd": "src"}}',
            'STEP_DONE {"index": 0, "note": "listed"}',
            'FINAL {"message": "The repo has a README."}',
        ])
        events = []

        result = _run(backend, tool, events=events)

        self.assertEqual("The repo has a README.", result.text)
        self.assertEqual([("ls", "src")], tool.commands)
        tool_result = [m for m in backend.calls[2] if m["content"].startswith("TOOL_RESULT ")]
        self.assertEqual(1, len(tool_result))
        self.assertIn('"exit_code": 0', tool_result[0]["content"])
        action_kinds = [e.trace.action_kind for e in events if e.type == "trace" and e.trace.action_kind]
        self.assertIn("command", action_kinds)
        self.assertIn("command-result", action_kinds)

    def test_refused_command_is_reported_to_the_model(self) -> None:
        tool = _FakeShellTool(refuse="Blocked high-risk command by policy.")
        backend = _ScriptedBackend([
            'PLAN {"steps": ["a"]}',
            'TOOL_CALL {"name": "run_shell", "arguments": {"command": "sudo ls"}}',
            'STEP_DONE {"index": 0}',
            'FINAL {"message": "could not run it"}',
        ])

        _run(backend, tool)

        fed_back = [m["content"] for m in backend.calls[2] if m["content"].startswith("TOOL_RESULT ")][0]
        self.assertIn('"ok": false', fed_back)
        self.assertIn("Blocked high-risk command by policy.", fed_back)

    def test_step_budget_is_exactly_max_steps(self) -> None:
        backend = _ScriptedBackend(['PLAN {"steps": ["a"]}', "thinking about it..."])

        with self.assertRaises(StepBudgetExceededError) as ctx:
            _run(backend, _FakeShellTool())

        self.assertEqual(1 + 24, len(backend.calls))
        self.assertIn("24 iterations", ctx.exception.message)

    def test_invalid_step_index_does_not_complete(self) -> None:
        backend = _ScriptedBackend([
            'PLAN {"steps": ["a"]}',
            'STEP_DONE {"index": 5}',
            'FINAL {"message": "done"}',
            'STEP_DONE {"index": 0}',
            'FINAL {"message": "done"}',
        ])

        result = _run(backend, _FakeShellTool())

        self.assertEqual("done", result.text)
        self.assertEqual(5, len(backend.calls))

    def test_plan_is_retried_once(self) -> None:
        backend = _ScriptedBackend(["I will do it", 'PLAN {"steps": ["a"]}', 'STEP_DONE {"index": 0}',
                                    'FINAL {"message": "ok"}'])
        self.assertEqual("ok", _run(backend, _FakeShellTool()).text)

    def test_no_valid_plan_is_a_protocol_error(self) -> None:
        backend = _ScriptedBackend(["nope"])
        with self.assertRaises(ProtocolError):
            _run(backend, _FakeShellTool())
        self.assertEqual(2, len(backend.calls))

    def test_protocol_lines_never_stream_as_text(self) -> None:
        backend = _ScriptedBackend(['PLAN {"steps": ["a"]}', 'STEP_DONE {"index": 0}', 'FINAL {"message": "ok"}'])
        events = []
        _run(backend, _FakeShellTool(), events=events)
        streamed = "".join(e.text for e in events if e.type == "text_delta")
        self.assertNotIn("PLAN {", streamed)
        self.assertTrue(streamed.endswith("ok\n"))

    def test_cancellation_stops_between_turns(self) -> None:
        token = CancelToken()

        def cancel_after_plan(call_count: int) -> None:
            if call_count == 2:
                token.cancel()

        backend = _ScriptedBackend(['PLAN {"steps": ["a"]}', "working"], on_call=cancel_after_plan)

        with self.assertRaises(RunCancelledError):
            _run(backend, _FakeShellTool(), token=token)
        self.assertEqual(2, len(backend.calls))
