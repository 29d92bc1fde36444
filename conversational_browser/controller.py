"""
Agent loop controller for Conversational Browser.

Runs one user message to completion: asks the model strategy for the next
step, executes the requested tools through the gateway, verifies their visual
effect against the screenshot stream, and feeds the enriched results back to
the model until it answers.
"""

import base64
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError

from .action_log import ActionLog, ValidationRecorder
from .config import ControllerConfig
from .errors import (
    BrowserAgentError,
    CancelledByUser,
    ConsecutiveToolErrorLimitExceeded,
    ContextOverflow,
    IterationLimitExceeded,
    RunInProgress,
    ToolExecutionError,
    UnknownActionError,
)
from .events import (
    AssistantMessage,
    EventChannel,
    RunStateChanged,
    ToolExecutionFailed,
    ToolExecutionStarted,
    ToolExecutionSucceeded,
    new_call_id,
)
from .gateway import ToolGateway
from .history import ConversationHistory
from .imaging import TEXT_ENTRY_TOOLS, compare_frames, describe_verdict
from .screenshot_cache import ScreenshotCache
from .strategies import VALIDATION_TOOL_NAME, ActionRequest, ModelStrategy, ValidationArgs
from .types import (
    ChangeVerdict,
    ConversationTurn,
    Frame,
    ImageBlock,
    Role,
    TextBlock,
    ToolCall,
    ToolResult,
    ToolResultPart,
)

logger = logging.getLogger(__name__)

DEFAULT_FINAL_TEXT = "I executed the requested action."

SNAPSHOT_TOOL = "browser_snapshot"

# Tools that only read page state; their visual effect is not checked
READ_ONLY_TOOLS = frozenset({
    "browser_snapshot",
    "browser_take_screenshot",
    "browser_console_messages",
    "browser_network_requests",
})

NAVIGATION_TOOLS = frozenset({
    "browser_navigate",
    "browser_navigate_back",
    "browser_navigate_forward",
})

FORM_TOOLS = frozenset({
    "browser_type",
    "browser_fill_form",
    "browser_select_option",
    "browser_file_upload",
})

# Errors Playwright reports when the page navigated away mid-call
NAVIGATION_ERROR_MARKERS = (
    "Execution context was destroyed",
    "most likely because of a navigation",
)


class RunState(str, Enum):
    """State of the agent loop for the current message."""
    IDLE = "idle"
    RUNNING = "running"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TurnResult:
    """Outcome of one processed user message."""
    text: str
    iterations: int
    tool_calls: int
    state: RunState = RunState.DONE

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text}


class AgentLoopController:
    """Drives the model/tool loop for each user message.

    At most one message is processed at a time; a message arriving while a
    run is active is rejected with RunInProgress.
    """

    def __init__(
        self,
        gateway: ToolGateway,
        strategy: ModelStrategy,
        cache: ScreenshotCache,
        history: Optional[ConversationHistory] = None,
        action_log: Optional[ActionLog] = None,
        validations: Optional[ValidationRecorder] = None,
        events: Optional[EventChannel] = None,
        config: Optional[ControllerConfig] = None,
    ):
        self.gateway = gateway
        self.strategy = strategy
        self.cache = cache
        self.history = history if history is not None else ConversationHistory()
        self.action_log = action_log if action_log is not None else ActionLog()
        self.validations = validations if validations is not None else ValidationRecorder()
        self.events = events if events is not None else EventChannel()
        self.config = config or ControllerConfig()

        self.consecutive_errors = 0
        self._state = RunState.IDLE
        self._run_lock = threading.Lock()
        self._cancel = threading.Event()
        self._tool_calls = 0

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def _set_state(self, state: RunState) -> None:
        if state != self._state:
            self._state = state
            self.events.emit(RunStateChanged(state.value))

    def cancel(self) -> None:
        """Request cancellation of the current run.

        Observed at the next iteration or before the next tool call; a tool
        call already in flight always completes.
        """
        if self.is_running:
            logger.info("Cancellation requested")
            self._cancel.set()

    def clear_history(self) -> None:
        self.history.clear()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def process_message(self, text: str) -> TurnResult:
        """Process one user message.

        Args:
            text: The user's message

        Returns:
            TurnResult with the model's final answer

        Raises:
            RunInProgress: Another message is being processed
            CancelledByUser: The run was cancelled
            IterationLimitExceeded: Too many model round-trips
            ConsecutiveToolErrorLimitExceeded: Too many failed tool calls in a row
            ContextOverflow: The history was too large (it has been cleared)
        """
        if not self._run_lock.acquire(blocking=False):
            raise RunInProgress("A message is already being processed")

        try:
            self._cancel.clear()
            self.consecutive_errors = 0
            self._tool_calls = 0
            logger.info("Processing message: %s", text[:200])
            self.history.append(ConversationTurn.user(text))
            self._set_state(RunState.RUNNING)

            try:
                result = self._run()
            except CancelledByUser:
                logger.info("Execution cancelled by user")
                self._set_state(RunState.CANCELLED)
                raise
            except ContextOverflow:
                logger.warning("Context overflow, clearing conversation history")
                self.history.clear()
                self._set_state(RunState.FAILED)
                raise
            except BrowserAgentError as e:
                logger.error("Run failed: %s", e)
                self._set_state(RunState.FAILED)
                raise
            finally:
                self._cancel.clear()
                self.history.strip_images(keep_last=self.config.history_images_retained)
                self.history.prune(self.config.history_max_turns)

            self._set_state(RunState.DONE)
            return result
        finally:
            self._run_lock.release()

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise CancelledByUser("Execution cancelled by user")

    def _run(self) -> TurnResult:
        tools = self.gateway.list_tools()
        iteration = 0

        while True:
            self._check_cancelled()
            if iteration >= self.config.max_iterations:
                raise IterationLimitExceeded(
                    f"Stopped after {self.config.max_iterations} iterations without a final answer"
                )
            iteration += 1
            self._set_state(RunState.RUNNING)

            # Only the latest screenshot is sent to the model
            self.history.strip_images(keep_last=1)
            response = self.strategy.next_step(tools, self.history.turns())
            self.history.append(self.strategy.assistant_turn(response))

            if response.is_final:
                final = response.text.strip() or DEFAULT_FINAL_TEXT
                logger.info("Run finished after %d iteration(s)", iteration)
                return TurnResult(final, iteration, self._tool_calls, RunState.DONE)

            if response.text:
                self.events.emit(AssistantMessage(response.text))

            self._set_state(RunState.EXECUTING_TOOLS)
            self._execute_actions(response.actions)

    def _execute_actions(self, actions: list[ActionRequest]) -> None:
        results: list[ToolResultPart] = []
        try:
            for action in actions:
                self._check_cancelled()
                results.append(self._execute_one(action))
                if self.consecutive_errors >= self.config.max_consecutive_errors:
                    raise ConsecutiveToolErrorLimitExceeded(
                        f"Stopped after {self.consecutive_errors} consecutive tool errors"
                    )
        except BrowserAgentError as e:
            # Every requested call needs a result or the history is invalid
            done = {part.call_id for part in results}
            for action in actions:
                if action.id not in done:
                    results.append(ToolResultPart(
                        action.id,
                        action.name,
                        (TextBlock(f"Not executed: {e.message}"),),
                        is_error=True,
                    ))
            raise
        finally:
            self.history.append(ConversationTurn(Role.TOOL, results))

    def _execute_one(self, action: ActionRequest) -> ToolResultPart:
        try:
            call = self.strategy.map_action(action)
        except UnknownActionError as e:
            self.consecutive_errors += 1
            logger.warning("Unrecognized action %r: %s", action.name, e.message)
            self.events.emit(ToolExecutionFailed(new_call_id(), action.name, e.message))
            return ToolResultPart(
                action.id,
                action.name,
                (TextBlock(f"Error: {e.message}\nTry a different approach."),),
                is_error=True,
            )

        if call.name == VALIDATION_TOOL_NAME:
            return self._record_validation(action, call)
        return self._run_tool(action, call)

    def _record_validation(self, action: ActionRequest, call: ToolCall) -> ToolResultPart:
        try:
            args = ValidationArgs.model_validate(call.arguments)
        except ValidationError as e:
            self.consecutive_errors += 1
            return ToolResultPart(
                action.id,
                call.name,
                (TextBlock(f"Error: invalid validation arguments: {e.errors()[0]['msg']}. "
                           "Provide description and result ('pass' or 'fail')."),),
                is_error=True,
            )

        self.validations.record(args.description, args.result, args.reason)
        self.consecutive_errors = 0
        logger.info("Validation %s: %s", args.result.upper(), args.description)
        return ToolResultPart(
            action.id,
            call.name,
            (TextBlock(f"Validation recorded: {args.result.upper()} - {args.description}"),),
        )

    def _run_tool(self, action: ActionRequest, call: ToolCall) -> ToolResultPart:
        call_id = new_call_id()
        self.events.emit(ToolExecutionStarted(call_id, call.name, dict(call.arguments)))
        self._tool_calls += 1

        before = self.cache.latest()
        started = time.monotonic()
        try:
            result = self.gateway.call_tool(call.name, call.arguments)
        except ToolExecutionError as e:
            result = ToolResult.error(f"### Result\nError: {e.message}")
        except BrowserAgentError as e:
            # Connection-class failures end the run; close out this call first
            self.action_log.append(call.name, call.arguments, success=False)
            self.events.emit(ToolExecutionFailed(call_id, call.name, e.message))
            raise

        blocks = list(result.content_blocks)
        is_error = result.is_error
        navigated = call.name in NAVIGATION_TOOLS and not is_error
        if is_error and any(marker in result.text for marker in NAVIGATION_ERROR_MARKERS):
            logger.info("Detected successful navigation (context destroyed)")
            is_error = False
            navigated = True
            blocks = [TextBlock(f"### Result\nSuccessfully executed {call.name}. Page navigated.")]

        if navigated and "Page Snapshot" not in result.text:
            snapshot = self._follow_up_snapshot()
            if snapshot:
                blocks.append(TextBlock(snapshot))
        duration_ms = int((time.monotonic() - started) * 1000)

        verdict: Optional[ChangeVerdict] = None
        if call.name not in READ_ONLY_TOOLS:
            time.sleep(self._settle_delay(call.name))
            after = self.cache.latest()
            verdict = self._compare(call.name, before, after)
            blocks.append(TextBlock(describe_verdict(verdict)))
            if self.config.attach_screenshots and after is not None:
                blocks.append(ImageBlock(base64.b64encode(after.scaled_bytes).decode("ascii")))

        self.action_log.append(call.name, call.arguments, success=not is_error)

        if is_error:
            self.consecutive_errors += 1
            message = result.text or "Tool reported an error"
            logger.warning("Tool %s failed: %s", call.name, message[:200])
            self.events.emit(ToolExecutionFailed(call_id, call.name, message))
            blocks.append(TextBlock("The action failed. Try a different approach."))
        else:
            self.consecutive_errors = 0
            percent = verdict.percent_diff if verdict is not None and not verdict.unknown else None
            self.events.emit(ToolExecutionSucceeded(call_id, call.name, duration_ms, percent))

        return ToolResultPart(action.id, call.name, tuple(blocks), is_error)

    def _follow_up_snapshot(self) -> Optional[str]:
        logger.info("Getting fresh snapshot after navigation...")
        time.sleep(self.config.snapshot_delay_s)
        try:
            result = self.gateway.call_tool(SNAPSHOT_TOOL, {})
        except ToolExecutionError as e:
            logger.error("Error getting snapshot after navigation: %s", e)
            return None
        return result.text or None

    def _settle_delay(self, tool_name: str) -> float:
        if tool_name in NAVIGATION_TOOLS:
            return self.config.settle_navigation_s
        if tool_name in FORM_TOOLS:
            return self.config.settle_form_s
        return self.config.settle_default_s

    def _compare(
        self,
        tool_name: str,
        before: Optional[Frame],
        after: Optional[Frame],
    ) -> ChangeVerdict:
        if before is None or after is None:
            return ChangeVerdict(False, 0.0, 0, 0, error="no screenshot available")
        if after.captured_at <= before.captured_at:
            return ChangeVerdict(False, 0.0, 0, 0, error="no new screenshot since the action")
        if tool_name in TEXT_ENTRY_TOOLS:
            threshold = self.config.text_entry_threshold
        else:
            threshold = self.config.default_threshold
        return compare_frames(before.full_bytes, after.full_bytes, threshold)
