import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from loguru import logger

from assistant_runs.logging_config import run_logger, setup_logging

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class SetupLoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"logging-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    def tearDown(self) -> None:
        logger.remove()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _lines(self, name: str) -> list[str]:
        logger.remove()
        return (self._tmp_dir / name).read_text(encoding="utf-8").splitlines()

    def test_lines_carry_stream_and_session(self) -> None:
        path = str(self._tmp_dir / "all.log")
        descriptions = setup_logging("DEBUG", [{"type": "file", "path": path}])

        logger.info("scheduler started")
        run_logger("stream_1", "sess_1").info("run started")

        self.assertEqual([f"file ({path}, DEBUG)"], descriptions)
        lines = self._lines("all.log")
        self.assertIn("| - | - |", lines[0])
        self.assertIn("| stream_1 | sess_1 |", lines[1])

    def test_runs_only_consumer_drops_unbound_lines(self) -> None:
        path = str(self._tmp_dir / "runs.log")
        descriptions = setup_logging("INFO", [{"type": "file", "path": path, "runs_only": True}])

        logger.info("scheduler started")
        run_logger("stream_2", "sess_2").info("run completed")

        self.assertEqual([f"file ({path}, INFO, runs only)"], descriptions)
        lines = self._lines("runs.log")
        self.assertEqual(1, len(lines))
        self.assertTrue(lines[0].endswith("run completed"))

    def test_unknown_consumer_is_skipped(self) -> None:
        self.assertEqual([], setup_logging("INFO", [{"type": "syslog"}]))
