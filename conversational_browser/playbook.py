"""
Playbook execution for Conversational Browser.

A playbook is a markdown file whose numbered or bulleted list items are sent
to the agent one at a time, in order, as if the user had typed them.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .action_log import ValidationRecorder
from .errors import BrowserAgentError, PlaybookError
from .events import EventChannel, PlaybookMessage
from .types import ValidationRecord

logger = logging.getLogger(__name__)

NUMBERED_ITEM = re.compile(r"^\d+\.\s+(.+)$")
BULLET_ITEM = re.compile(r"^[-*]\s+(.+)$")
HORIZONTAL_RULE = re.compile(r"^[-*_]{3,}$")


def parse_playbook(text: str) -> list[str]:
    """Extract the steps of a markdown playbook.

    Numbered items (``1. Step``) and bullets (``- Step`` or ``* Step``) are
    steps. Headings, horizontal rules and any other prose are skipped.
    """
    steps = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or HORIZONTAL_RULE.match(stripped):
            continue
        match = NUMBERED_ITEM.match(stripped) or BULLET_ITEM.match(stripped)
        if match:
            steps.append(match.group(1).strip())
    return steps


def load_playbook(path: Union[str, Path]) -> list[str]:
    """Read and parse a playbook file.

    Raises:
        PlaybookError: If the file is missing or has no steps
    """
    path = Path(path)
    logger.info("Parsing playbook file: %s", path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise PlaybookError(f"Playbook file not found: {path}") from None

    steps = parse_playbook(text)
    logger.info("Parsed %d steps from playbook", len(steps))
    if not steps:
        raise PlaybookError(
            "No valid steps found in playbook. Use numbered lists (1. Step) "
            "or bullet points (- Step)."
        )
    return steps


@dataclass
class PlaybookReport:
    """Outcome of a completed playbook run."""
    name: str
    steps: list[str]
    answers: list[str] = field(default_factory=list)
    validations: list[ValidationRecord] = field(default_factory=list)

    @property
    def passed(self) -> int:
        return sum(1 for v in self.validations if v.passed)

    @property
    def failed(self) -> int:
        return len(self.validations) - self.passed

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "steps": len(self.steps),
            "validationResults": [v.to_dict() for v in self.validations],
            "passed": self.passed,
            "failed": self.failed,
        }


class PlaybookRunner:
    """Runs playbook steps through the agent, one at a time.

    Execution stops at the first failing step.
    """

    def __init__(
        self,
        process_message: Callable[[str], Any],
        validations: ValidationRecorder,
        events: EventChannel,
        step_pause_s: float = 3.0,
        announce_pause_s: float = 0.3,
    ):
        """Initialize the runner.

        Args:
            process_message: Sends one message to the agent and returns its result
            validations: Recorder the agent writes validation outcomes to
            events: Channel receiving playbook progress messages
            step_pause_s: Pause after each step for the page to settle
            announce_pause_s: Pause between announcing a step and running it
        """
        self._process_message = process_message
        self.validations = validations
        self.events = events
        self.step_pause_s = step_pause_s
        self.announce_pause_s = announce_pause_s

        self._lock = threading.Lock()
        self.is_executing = False
        self.current_step_index = 0
        self.steps: list[str] = []

    def status(self) -> dict[str, Any]:
        current = None
        if self.is_executing and self.current_step_index < len(self.steps):
            current = self.steps[self.current_step_index]
        return {
            "isExecuting": self.is_executing,
            "currentStepIndex": self.current_step_index,
            "totalSteps": len(self.steps),
            "currentStep": current,
        }

    def _send(self, role: str, message: str) -> None:
        self.events.emit(PlaybookMessage(role, message))

    def run(self, path: Union[str, Path]) -> PlaybookReport:
        """Execute a playbook file.

        Raises:
            PlaybookError: If a playbook is already running, the file is
                invalid, or a step fails
        """
        with self._lock:
            if self.is_executing:
                raise PlaybookError("Playbook is already executing")
            self.is_executing = True
            self.current_step_index = 0

        path = Path(path)
        try:
            self.steps = load_playbook(path)
            first_validation = len(self.validations)
            total = len(self.steps)
            report = PlaybookReport(path.name, list(self.steps))

            self._send("system", f"Starting playbook execution: {path.name}")
            self._send("system", f"Found {total} steps to execute")

            for index, step in enumerate(self.steps):
                self.current_step_index = index
                logger.info("Executing step %d/%d: %s", index + 1, total, step)
                self._send("user", step)
                time.sleep(self.announce_pause_s)

                try:
                    result = self._process_message(step)
                except BrowserAgentError as e:
                    logger.error("Step %d/%d failed: %s", index + 1, total, e)
                    self._send("system", f"Step {index + 1} failed: {e.message}")
                    raise PlaybookError(
                        f"Playbook execution stopped at step {index + 1}: {e.message}"
                    ) from e

                answer = getattr(result, "text", str(result))
                report.answers.append(answer)
                if answer:
                    self._send("assistant", answer)
                time.sleep(self.step_pause_s)

            report.validations = self.validations.entries()[first_validation:]
            self._send(
                "system",
                f"Playbook execution completed successfully ({total}/{total} steps)",
            )
            if report.validations:
                logger.info(
                    "Validation summary: %d passed, %d failed",
                    report.passed, report.failed,
                )
            return report
        except PlaybookError as e:
            logger.error("Playbook execution failed: %s", e)
            self._send("system", f"Playbook execution failed: {e.message}")
            raise
        finally:
            with self._lock:
                self.is_executing = False
                self.current_step_index = 0
                self.steps = []
