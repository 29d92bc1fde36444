"""
Outbound event channel for Conversational Browser.

The orchestration core writes typed events; the boundary layer (CLI, UI)
drains them. Decouples the agent loop from any particular transport.
"""

import queue
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Union


def new_call_id() -> str:
    """Generate an ID for one tool execution."""
    return f"call_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class ToolExecutionStarted:
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ToolExecutionSucceeded:
    call_id: str
    tool_name: str
    duration_ms: int
    visual_change_percent: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ToolExecutionFailed:
    call_id: str
    tool_name: str
    error: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class AssistantMessage:
    """Raw assistant narration produced during a run."""
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RunStateChanged:
    state: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PlaybookMessage:
    role: str
    message: str
    timestamp: float = field(default_factory=time.time)


Event = Union[
    ToolExecutionStarted,
    ToolExecutionSucceeded,
    ToolExecutionFailed,
    AssistantMessage,
    RunStateChanged,
    PlaybookMessage,
]


class EventChannel:
    """Thread-safe FIFO of outbound events."""

    def __init__(self, maxsize: int = 0):
        self._queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)

    def emit(self, event: Event) -> None:
        """Publish an event. A full bounded channel drops its oldest event."""
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Wait for the next event, or return None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        """Return all pending events without blocking."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def __len__(self) -> int:
        return self._queue.qsize()
