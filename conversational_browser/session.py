"""
Browser session for Conversational Browser.

A session owns every component of one conversation with the browser: the
tool gateway, screenshot cache and streamer, conversation history, action
and validation logs, event channel, model strategy, agent loop and playbook
runner. Boundary layers (the CLI, a UI shell) talk only to the session.
"""

import logging
from pathlib import Path
from typing import Any, Optional, Union

from .action_log import ActionLog, ValidationRecorder
from .config import AppConfig
from .controller import AgentLoopController, TurnResult
from .events import EventChannel
from .gateway import ToolGateway
from .history import ConversationHistory
from .playbook import PlaybookRunner
from .screenshot_cache import ScreenshotCache
from .strategies import ModelStrategy, create_strategy
from .streamer import AdaptiveScreenshotStreamer, FrameListener
from .types import ToolSpec

logger = logging.getLogger(__name__)

# Oldest events are dropped once a host stops draining the channel
EVENT_BACKLOG = 1000


class BrowserSession:
    """One conversation with a remote-controlled browser.

    Usage:
        with BrowserSession(AppConfig.from_env()) as session:
            reply = session.process_message("go to example.com")
            print(reply["text"])
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        gateway: Optional[ToolGateway] = None,
        strategy: Optional[ModelStrategy] = None,
    ):
        """Initialize the session.

        Args:
            config: Application configuration (read from the environment by default)
            gateway: Optional pre-built gateway
            strategy: Optional pre-built model strategy; created from the
                provider configuration on first use otherwise
        """
        self.config = config or AppConfig.from_env()
        self.events = EventChannel(maxsize=EVENT_BACKLOG)
        self.cache = ScreenshotCache(self.config.streamer.marker_duration_s)
        self.gateway = gateway or ToolGateway(self.config.gateway)
        self.streamer = AdaptiveScreenshotStreamer(self.gateway, self.cache, self.config.streamer)
        self.history = ConversationHistory()
        self.action_log = ActionLog()
        self.validations = ValidationRecorder()
        self.playbook = PlaybookRunner(
            self._run_message,
            self.validations,
            self.events,
        )
        self._strategy = strategy
        self._controller: Optional[AgentLoopController] = None

    @property
    def controller(self) -> AgentLoopController:
        """The agent loop, created with the model strategy on first use.

        Raises:
            ProviderNotConfigured: If the provider has no usable credentials
        """
        if self._controller is None:
            if self._strategy is None:
                self._strategy = create_strategy(self.config.provider)
            self._controller = AgentLoopController(
                gateway=self.gateway,
                strategy=self._strategy,
                cache=self.cache,
                history=self.history,
                action_log=self.action_log,
                validations=self.validations,
                events=self.events,
                config=self.config.controller,
            )
        return self._controller

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, stream: bool = True, listener: Optional[FrameListener] = None) -> None:
        """Connect to the automation server and optionally start streaming.

        Raises:
            GatewayStartupError: If the automation server never becomes reachable
        """
        logger.info("Starting browser session (provider: %s)", self.config.provider.display_name)
        self.gateway.initialize()
        if stream:
            self.streamer.start(listener)

    def shutdown(self) -> None:
        """Stop streaming and release all resources. Never raises."""
        logger.info("Shutting down browser session")
        self.streamer.stop()
        if self._strategy is not None:
            try:
                self._strategy.close()
            except Exception as e:
                logger.debug("Error closing model client: %s", e)
        self.gateway.shutdown()

    def __enter__(self) -> "BrowserSession":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Boundary operations
    # ------------------------------------------------------------------

    def _run_message(self, text: str) -> TurnResult:
        return self.controller.process_message(text)

    def process_message(self, text: str) -> dict[str, Any]:
        """Send a user message to the agent.

        Returns:
            ``{"text": <final answer>}``
        """
        return self._run_message(text).to_dict()

    def cancel_execution(self) -> None:
        if self._controller is not None:
            self._controller.cancel()

    def get_action_log(self) -> list[dict[str, Any]]:
        return self.action_log.to_dicts()

    def clear_action_log(self) -> None:
        self.action_log.clear()
        self.validations.clear()
        logger.info("Action log cleared")

    def get_validation_results(self) -> list[dict[str, Any]]:
        return self.validations.to_dicts()

    def get_llm_provider(self) -> dict[str, Any]:
        return self.config.provider.to_dict()

    def get_playbook_status(self) -> dict[str, Any]:
        return self.playbook.status()

    def run_playbook(self, path: Union[str, Path]) -> dict[str, Any]:
        return self.playbook.run(path).to_dict()

    def list_tools(self) -> list[ToolSpec]:
        return self.gateway.list_tools()

    def set_frame_listener(self, listener: Optional[FrameListener]) -> None:
        self.streamer.set_listener(listener)

    def start_stream(self, listener: Optional[FrameListener] = None) -> None:
        self.streamer.start(listener)

    def stop_stream(self) -> None:
        self.streamer.stop()

    def clear_history(self) -> None:
        self.history.clear()
