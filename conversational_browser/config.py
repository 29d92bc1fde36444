"""
Configuration management for Conversational Browser.

Provides configuration dataclasses and environment variable loading.
"""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .providers import ProviderConfig

# Load environment variables from .env file if present
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def get_base_dir() -> Path:
    """Get the base directory for conversational browser data."""
    return Path.home() / ".conversational_browser"


def get_runs_dir() -> Path:
    """Get the directory for session transcripts."""
    return get_base_dir() / "runs"


DEFAULT_SERVER_COMMAND = (
    "npx @playwright/mcp@latest --browser chrome --caps vision --headless --port {port}"
)


@dataclass
class GatewayConfig:
    """Configuration for the tool execution gateway."""

    # Attach to an already running server instead of spawning one
    server_url: Optional[str] = field(
        default_factory=lambda: os.getenv("MCP_SERVER_URL") or None
    )
    server_port: int = field(default_factory=lambda: _env_int("MCP_SERVER_PORT", 3000))
    server_command: str = field(
        default_factory=lambda: os.getenv("MCP_SERVER_COMMAND", DEFAULT_SERVER_COMMAND)
    )

    # Startup polling (approx 90 seconds total with backoff)
    startup_attempts: int = 15
    startup_backoff_factor: float = 1.5
    startup_min_delay_s: float = 0.5
    startup_max_delay_s: float = 10.0
    probe_timeout_s: float = 1.0

    # Per tool call
    call_timeout_s: float = field(default_factory=lambda: _env_float("MCP_CALL_TIMEOUT_S", 60.0))

    # Reconnection
    max_reconnect_attempts: int = 3
    reconnect_base_delay_s: float = 1.0
    reconnect_max_delay_s: float = 10.0

    # Health check
    health_check_interval_s: float = 60.0
    failure_window_s: float = 300.0
    success_stale_after_s: float = 120.0
    health_probe_tool: str = "browser_console_messages"

    # Graceful shutdown
    terminate_grace_s: float = 1.0

    @property
    def owns_process(self) -> bool:
        """Whether the gateway spawns the automation server itself."""
        return not self.server_url

    @property
    def base_url(self) -> str:
        """Base URL of the automation server."""
        if self.server_url:
            return self.server_url.rstrip("/")
        return f"http://localhost:{self.server_port}"

    @property
    def command(self) -> list[str]:
        """The spawn command as an argv list."""
        return shlex.split(self.server_command.format(port=self.server_port))


@dataclass
class StreamerConfig:
    """Configuration for the adaptive screenshot streamer."""

    min_fps: int = field(default_factory=lambda: _env_int("STREAM_MIN_FPS", 2))
    max_fps: int = field(default_factory=lambda: _env_int("STREAM_MAX_FPS", 15))
    unchanged_threshold: int = 3
    max_consecutive_errors: int = 5
    pause_cooldown_s: float = 10.0
    paused_poll_s: float = 0.25
    scale_factor: float = 0.7
    marker_duration_s: float = 10.0
    # Any differing pixel counts as a change for rate adaptation
    change_threshold_percent: float = 0.0


@dataclass
class ControllerConfig:
    """Configuration for the agent loop controller."""

    max_iterations: int = field(default_factory=lambda: _env_int("AGENT_MAX_ITERATIONS", 25))
    max_consecutive_errors: int = field(
        default_factory=lambda: _env_int("AGENT_MAX_CONSECUTIVE_ERRORS", 3)
    )

    # History
    # A full run is one user turn plus an assistant and a tool turn per
    # iteration; the window must hold it or pruning finds no user turn to keep
    history_max_turns: int = 60
    history_images_retained: int = 0

    # Settle delays before reading the post-action frame (seconds)
    settle_navigation_s: float = 1.5
    settle_form_s: float = 1.0
    settle_default_s: float = 0.5
    # Wait before the follow-up snapshot after a navigation
    snapshot_delay_s: float = 1.0

    # Visual change thresholds (percent of pixels)
    text_entry_threshold: float = 0.1
    default_threshold: float = 0.5

    # Attach the latest scaled frame to tool results
    attach_screenshots: bool = True


@dataclass
class AppConfig:
    """Top-level configuration for a browser session."""

    provider: ProviderConfig = field(default_factory=ProviderConfig.from_env)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    streamer: StreamerConfig = field(default_factory=StreamerConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    @classmethod
    def from_env(cls, provider: Optional[str] = None) -> "AppConfig":
        """Create configuration from environment variables.

        Args:
            provider: Optional provider name overriding LLM_PROVIDER
        """
        return cls(provider=ProviderConfig.from_env(provider))


# Default configuration values for documentation
DEFAULTS = {
    "provider": "gemini",
    "server_port": 3000,
    "max_iterations": 25,
    "max_consecutive_errors": 3,
    "history_max_turns": 60,
    "min_fps": 2,
    "max_fps": 15,
    "log_level": "INFO",
}
