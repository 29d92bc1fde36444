"""
Tests for the CLI and console reporting.
"""

import json
from io import StringIO

from rich.console import Console

from conversational_browser.cli import create_parser, main
from conversational_browser.events import (
    PlaybookMessage,
    ToolExecutionFailed,
    ToolExecutionStarted,
    ToolExecutionSucceeded,
)
from conversational_browser.logger import ConsoleReporter, redact_arguments


class TestParser:
    """Tests for the argument parser."""

    def test_run_command(self):
        args = create_parser().parse_args(["run", "go to example.com", "--provider", "claude", "--show-log"])

        assert args.command == "run"
        assert args.message == "go to example.com"
        assert args.provider == "claude"
        assert args.show_log is True
        assert args.no_stream is False

    def test_playbook_command(self):
        args = create_parser().parse_args(["playbook", "flow.md", "--no-stream", "--log-level", "DEBUG"])

        assert args.command == "playbook"
        assert args.file == "flow.md"
        assert args.no_stream is True
        assert args.log_level == "DEBUG"

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "convbrowser" in capsys.readouterr().out


class TestConsoleReporter:
    """Tests for console rendering."""

    def _reporter(self, transcript=None):
        output = StringIO()
        return ConsoleReporter(Console(file=output, width=120), transcript_path=transcript), output

    def test_render_events(self):
        reporter, output = self._reporter()
        reporter.render_all([
            ToolExecutionStarted("c1", "browser_type", {"text": "hello", "password": "hunter2"}),
            ToolExecutionSucceeded("c1", "browser_type", 120, 2.5),
            ToolExecutionFailed("c2", "browser_click", "Element not found"),
            PlaybookMessage("system", "Found 2 steps to execute"),
        ])

        text = output.getvalue()
        assert "browser_type" in text
        assert "hunter2" not in text
        assert "visual change 2.50%" in text
        assert "Element not found" in text
        assert "Found 2 steps" in text

    def test_transcript(self, tmp_path):
        path = tmp_path / "runs" / "session.jsonl"
        reporter, _ = self._reporter(transcript=path)
        reporter.render(ToolExecutionStarted("c1", "browser_type", {"password": "hunter2"}))

        record = json.loads(path.read_text(encoding="utf-8").splitlines()[0])
        assert record["event"] == "ToolExecutionStarted"
        assert record["arguments"]["password"] == "[REDACTED]"

    def test_redact_arguments(self):
        assert redact_arguments({"client_secret": "x", "url": "u"}) == {
            "client_secret": "[REDACTED]",
            "url": "u",
        }
