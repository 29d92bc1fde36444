"""
Logging and console output for Conversational Browser.

Configures stdlib logging through rich, and renders session events,
answers and the action log on the console.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .events import (
    AssistantMessage,
    Event,
    PlaybookMessage,
    ToolExecutionFailed,
    ToolExecutionStarted,
    ToolExecutionSucceeded,
)
from .types import ActionLogEntry, ValidationRecord

# Per-frame streaming chatter sits below DEBUG
VERBOSE = 5
logging.addLevelName(VERBOSE, "VERBOSE")


def setup_logging(level: str = "INFO", console: Optional[Console] = None) -> None:
    """Configure root logging with a rich handler.

    Args:
        level: ERROR, WARN, INFO, DEBUG or VERBOSE
        console: Optional console to log to (defaults to stderr)
    """
    name = level.upper()
    if name == "WARN":
        name = "WARNING"
    numeric = VERBOSE if name == "VERBOSE" else logging.getLevelName(name)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=numeric,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(numeric, logging.WARNING))


def redact_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    """Redact password-like values before display or logging."""
    redacted = {}
    for key, value in arguments.items():
        if "password" in key.lower() or "secret" in key.lower():
            redacted[key] = "[REDACTED]"
        else:
            redacted[key] = value
    return redacted


class ConsoleReporter:
    """Renders session events and results on a rich console."""

    def __init__(self, console: Optional[Console] = None, transcript_path: Optional[Path] = None):
        """Initialize the reporter.

        Args:
            console: Console to print to
            transcript_path: Optional JSONL file receiving every event
        """
        self.console = console or Console()
        self.transcript_path = transcript_path
        if transcript_path:
            transcript_path.parent.mkdir(parents=True, exist_ok=True)
            transcript_path.touch()

    def print_header(self, provider: str, tool_count: int) -> None:
        """Print the session header."""
        self.console.print()
        self.console.print(Panel(
            f"[bold cyan]Provider:[/bold cyan] {provider}\n"
            f"[bold cyan]Browser tools:[/bold cyan] {tool_count}",
            title="Conversational Browser",
            border_style="cyan",
        ))
        self.console.print()

    def render(self, event: Event) -> None:
        """Print a single event and append it to the transcript."""
        self._write_transcript(event)

        if isinstance(event, ToolExecutionStarted):
            line = Text()
            line.append("▶ ", style="cyan")
            line.append(event.tool_name, style="bold cyan")
            args = redact_arguments(event.arguments)
            args_str = ", ".join(f"{k}={v!r}" for k, v in args.items())
            if args_str:
                line.append(f"({args_str})", style="dim")
            self.console.print(line)
        elif isinstance(event, ToolExecutionSucceeded):
            change = ""
            if event.visual_change_percent is not None:
                change = f", visual change {event.visual_change_percent:.2f}%"
            self.console.print(
                f"  [green]✓[/green] {event.tool_name} [dim]({event.duration_ms} ms{change})[/dim]"
            )
        elif isinstance(event, ToolExecutionFailed):
            self.console.print(f"  [red]✗[/red] {event.tool_name}: {event.error}")
        elif isinstance(event, AssistantMessage):
            self.console.print(f"[dim italic]{event.text}[/dim italic]")
        elif isinstance(event, PlaybookMessage):
            style = {"user": "bold", "system": "magenta"}.get(event.role, "")
            self.console.print(f"[{style}]{event.message}[/{style}]" if style else event.message)

    def render_all(self, events: Iterable[Event]) -> None:
        for event in events:
            self.render(event)

    def print_final_answer(self, answer: str) -> None:
        """Print the assistant's answer to the current message."""
        self.console.print()
        self.console.print(Panel(answer, title="Assistant", border_style="green"))

    def print_error(self, error: str) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {error}")

    def print_action_log(
        self,
        entries: list[ActionLogEntry],
        validations: list[ValidationRecord],
    ) -> None:
        """Print the action log and validation results as tables."""
        table = Table(title="Action Log")
        table.add_column("#", style="dim")
        table.add_column("Time")
        table.add_column("Tool", style="cyan")
        table.add_column("Arguments")
        table.add_column("OK")
        for i, entry in enumerate(entries, 1):
            table.add_row(
                str(i),
                datetime.fromtimestamp(entry.timestamp).strftime("%H:%M:%S"),
                entry.tool_name,
                json.dumps(redact_arguments(entry.arguments))[:80],
                "[green]✓[/green]" if entry.success else "[red]✗[/red]",
            )
        self.console.print(table)

        if validations:
            vtable = Table(title="Validations")
            vtable.add_column("Description")
            vtable.add_column("Result")
            vtable.add_column("Reason", style="dim")
            for record in validations:
                color = "green" if record.passed else "red"
                vtable.add_row(
                    record.description,
                    f"[{color}]{record.result.upper()}[/{color}]",
                    record.fail_reason or "",
                )
            self.console.print(vtable)

    def print_tools(self, tools: list) -> None:
        """Print the tool catalog."""
        table = Table(title="Browser Tools", show_header=True)
        table.add_column("Name", style="cyan")
        table.add_column("Description")
        for tool in tools:
            table.add_row(tool.name, (tool.description or "").splitlines()[0][:100] if tool.description else "")
        self.console.print(table)

    def _write_transcript(self, event: Event) -> None:
        if not self.transcript_path:
            return
        record = {"event": type(event).__name__, **_event_fields(event)}
        with open(self.transcript_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")


def _event_fields(event: Event) -> dict[str, Any]:
    fields = dict(vars(event))
    if "arguments" in fields:
        fields["arguments"] = redact_arguments(fields["arguments"])
    return fields
