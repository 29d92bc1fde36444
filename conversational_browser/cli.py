"""
CLI for Conversational Browser.

Provides the command-line interface using argparse.
"""

import argparse
import sys
import threading
from datetime import datetime
from typing import Any, Callable, Optional

from rich.console import Console

from . import __version__
from .config import DEFAULTS, AppConfig, get_runs_dir
from .errors import BrowserAgentError, ErrorKind, describe_error
from .logger import ConsoleReporter, setup_logging
from .session import BrowserSession

EXIT_COMMANDS = {"/quit", "/exit", "quit", "exit"}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="convbrowser",
        description="Conversational Browser - drive a real browser by chatting with an LLM.",
        epilog="""
Examples:
  # Chat with the browser interactively
  convbrowser chat

  # Send a single message
  convbrowser run "Go to example.com and tell me the page title"

  # Use Claude instead of Gemini
  convbrowser run "Open the docs for Playwright" --provider claude

  # Execute the steps of a markdown playbook
  convbrowser playbook checkout-flow.md

  # List the browser tools of the automation server
  convbrowser tools
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Conversational Browser {__version__}",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--provider",
        type=str,
        default=None,
        help=f"LLM provider: gemini, claude, openai or lm_studio (default: LLM_PROVIDER or {DEFAULTS['provider']})",
    )
    common.add_argument(
        "--no-stream",
        action="store_true",
        help="Do not stream screenshots (disables visual change checks)",
    )
    common.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["ERROR", "WARN", "INFO", "DEBUG", "VERBOSE"],
        help=f"Log level (default: LOG_LEVEL or {DEFAULTS['log_level']})",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser(
        "chat",
        parents=[common],
        help="Interactive chat; Ctrl-C cancels the running message",
    )

    run_parser = subparsers.add_parser("run", parents=[common], help="Send one message and exit")
    run_parser.add_argument("message", type=str, help="The message to send")
    run_parser.add_argument(
        "--show-log",
        action="store_true",
        help="Print the action log after the answer",
    )

    playbook_parser = subparsers.add_parser(
        "playbook",
        parents=[common],
        help="Execute a markdown playbook step by step",
    )
    playbook_parser.add_argument("file", type=str, help="Path to the playbook markdown file")

    subparsers.add_parser("tools", parents=[common], help="List the available browser tools")

    return parser


def _build_session(args: argparse.Namespace) -> tuple[BrowserSession, ConsoleReporter]:
    config = AppConfig.from_env(args.provider)
    if args.log_level:
        config.log_level = args.log_level
    setup_logging(config.log_level)

    transcript = get_runs_dir() / f"{datetime.now().strftime('%Y%m%d_%H%M%S')}.jsonl"
    reporter = ConsoleReporter(Console(), transcript_path=transcript)
    return BrowserSession(config), reporter


def _run_with_events(
    session: BrowserSession,
    reporter: ConsoleReporter,
    fn: Callable[..., Any],
    *args: Any,
) -> Any:
    """Run ``fn`` on a worker thread while rendering session events.

    Ctrl-C requests cancellation instead of killing the process; the run then
    ends with CancelledByUser after the in-flight tool call.
    """
    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["result"] = fn(*args)
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=target, name="agent-run", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            event = session.events.get(timeout=0.1)
            if event is not None:
                reporter.render(event)
        except KeyboardInterrupt:
            reporter.console.print("\n[yellow]Cancelling after the current tool call...[/yellow]")
            session.cancel_execution()
    reporter.render_all(session.events.drain())

    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]


def run_command(args: argparse.Namespace) -> int:
    """Execute the run command.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    session, reporter = _build_session(args)
    try:
        session.start(stream=not args.no_stream)
        reporter.print_header(session.config.provider.display_name, len(session.list_tools()))
        reply = _run_with_events(session, reporter, session.process_message, args.message)
        reporter.print_final_answer(reply["text"])
        if args.show_log:
            reporter.print_action_log(session.action_log.entries(), session.validations.entries())
        return 0
    except BrowserAgentError as e:
        reporter.print_error(describe_error(e))
        return 1
    except KeyboardInterrupt:
        reporter.console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    finally:
        session.shutdown()


def chat_command(args: argparse.Namespace) -> int:
    """Execute the interactive chat command."""
    session, reporter = _build_session(args)
    try:
        session.start(stream=not args.no_stream)
    except BrowserAgentError as e:
        reporter.print_error(describe_error(e))
        session.shutdown()
        return 1

    console = reporter.console
    reporter.print_header(session.config.provider.display_name, len(session.list_tools()))
    console.print("[dim]Commands: /log (action log), /clear (reset conversation), /quit[/dim]")

    try:
        while True:
            try:
                message = console.input("[bold]You:[/bold] ").strip()
            except EOFError:
                break
            if not message:
                continue
            if message in EXIT_COMMANDS:
                break
            if message == "/log":
                reporter.print_action_log(session.action_log.entries(), session.validations.entries())
                continue
            if message == "/clear":
                session.clear_history()
                session.clear_action_log()
                console.print("[dim]Conversation cleared[/dim]")
                continue

            try:
                reply = _run_with_events(session, reporter, session.process_message, message)
                reporter.print_final_answer(reply["text"])
            except BrowserAgentError as e:
                reporter.print_error(describe_error(e))
                if e.kind == ErrorKind.PROVIDER_NOT_CONFIGURED:
                    return 1
        return 0
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    finally:
        session.shutdown()


def playbook_command(args: argparse.Namespace) -> int:
    """Execute the playbook command."""
    session, reporter = _build_session(args)
    try:
        session.start(stream=not args.no_stream)
        reporter.print_header(session.config.provider.display_name, len(session.list_tools()))
        report = _run_with_events(session, reporter, session.run_playbook, args.file)
        reporter.print_action_log(session.action_log.entries(), session.validations.entries())
        reporter.console.print(
            f"[bold green]Playbook completed:[/bold green] {report['steps']} steps, "
            f"{report['passed']} validations passed, {report['failed']} failed"
        )
        return 0 if report["failed"] == 0 else 2
    except BrowserAgentError as e:
        reporter.print_error(describe_error(e))
        return 1
    except KeyboardInterrupt:
        reporter.console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    finally:
        session.shutdown()


def tools_command(args: argparse.Namespace) -> int:
    """Execute the tools command."""
    session, reporter = _build_session(args)
    try:
        session.start(stream=False)
        reporter.print_tools(session.list_tools())
        return 0
    except BrowserAgentError as e:
        reporter.print_error(describe_error(e))
        return 1
    finally:
        session.shutdown()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command line arguments (uses sys.argv if None)

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "run": run_command,
        "chat": chat_command,
        "playbook": playbook_command,
        "tools": tools_command,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 1
    return command(args)


if __name__ == "__main__":
    sys.exit(main())
