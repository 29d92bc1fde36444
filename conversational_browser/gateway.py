"""
Tool execution gateway for Conversational Browser.

Owns the connection to the Playwright MCP server: spawns (or attaches to)
the server process, waits for it to come up, speaks MCP JSON-RPC over the
streamable HTTP transport, and recovers from connection faults with bounded
reconnection.
"""

import base64
import itertools
import json
import logging
import os
import re
import subprocess
import threading
import time
from typing import IO, Any, Callable, Optional

import httpx

from . import __version__
from .config import GatewayConfig
from .errors import (
    BrowserAgentError,
    GatewayConnectionError,
    GatewayStartupError,
    GatewayUnavailable,
    ToolExecutionError,
)
from .logger import VERBOSE
from .scheduling import CancellationToken, ScheduledTask
from .types import GatewayState, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

SCREENSHOT_TOOL = "browser_take_screenshot"

# JSON-RPC error code used by MCP for request timeouts
MCP_REQUEST_TIMEOUT = -32001

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


class McpHttpChannel:
    """MCP client over the streamable HTTP transport.

    Each JSON-RPC request is a POST to ``<base>/mcp``; the server answers
    either with a JSON body or with a short event stream carrying the
    response message.
    """

    PROTOCOL_VERSION = "2025-03-26"

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 60.0,
        client: Optional[httpx.Client] = None,
    ):
        self.endpoint = f"{base_url.rstrip('/')}/mcp"
        self.timeout_s = timeout_s
        self.client = client or httpx.Client(timeout=timeout_s)
        self.session_id: Optional[str] = None
        self.server_info: dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    def open(self) -> None:
        """Perform the MCP initialize handshake."""
        result = self._request("initialize", {
            "protocolVersion": self.PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "clientInfo": {"name": "conversational-browser", "version": __version__},
        })
        self.server_info = result.get("serverInfo", {})
        self._notify("notifications/initialized")

    def list_tools(self) -> list[ToolSpec]:
        """Fetch the full tool catalog, following pagination cursors."""
        tools: list[ToolSpec] = []
        cursor: Optional[str] = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            result = self._request("tools/list", params)
            tools.extend(ToolSpec.from_mcp(t) for t in result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        result = self._request("tools/call", {"name": name, "arguments": arguments})
        return ToolResult.from_mcp(result)

    def close(self) -> None:
        try:
            if self.session_id:
                self.client.delete(self.endpoint, headers=self._headers())
        finally:
            self.client.close()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self.session_id:
            headers["Mcp-Session-Id"] = self.session_id
        return headers

    def _post(self, payload: dict[str, Any]) -> httpx.Response:
        try:
            response = self.client.post(self.endpoint, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise GatewayConnectionError(f"Request timeout: {e}") from e
        except httpx.TransportError as e:
            raise GatewayConnectionError(f"Connection failed: {e}") from e

        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self.session_id = session_id
        return response

    def _notify(self, method: str) -> None:
        self._post({"jsonrpc": "2.0", "method": method})

    def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        with self._id_lock:
            request_id = next(self._ids)
        response = self._post({
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params,
        })

        if response.status_code == 404 and self.session_id:
            raise GatewayConnectionError("MCP session expired")
        if response.status_code >= 500:
            raise GatewayConnectionError(f"Server error {response.status_code} on {method}")
        if response.status_code >= 400:
            raise ToolExecutionError(
                f"{method} rejected with status {response.status_code}",
                status=response.status_code,
            )

        message = self._decode(response, request_id)
        error = message.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            text = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            if code == MCP_REQUEST_TIMEOUT or "timeout" in text.lower():
                raise GatewayConnectionError(f"{method} timed out: {text}")
            raise ToolExecutionError(f"{method} failed: {text}")
        return message.get("result") or {}

    def _decode(self, response: httpx.Response, request_id: int) -> dict[str, Any]:
        content_type = response.headers.get("content-type", "")
        try:
            if content_type.startswith("text/event-stream"):
                for line in response.text.splitlines():
                    if not line.startswith("data:"):
                        continue
                    message = json.loads(line[5:].strip())
                    if message.get("id") == request_id:
                        return message
                raise GatewayConnectionError("No response message in event stream")
            return response.json()
        except ValueError as e:
            raise GatewayConnectionError(f"Malformed response from server: {e}") from e


def _pipe_to_log(stream: IO[str]) -> None:
    for line in stream:
        line = line.strip()
        if line:
            logger.debug("[MCP Server]: %s", line)


def launch_server(command: list[str]) -> subprocess.Popen:
    """Spawn the automation server and forward its stderr to the log."""
    try:
        process = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            env=os.environ.copy(),
            text=True,
        )
    except OSError as e:
        raise GatewayStartupError(f"Failed to spawn automation server process: {e}") from e

    threading.Thread(
        target=_pipe_to_log,
        args=(process.stderr,),
        name="mcp-server-stderr",
        daemon=True,
    ).start()
    return process


class ToolGateway:
    """Owns the long-lived connection to the browser automation server.

    Features:
        - Bounded startup polling of the liveness probe
        - At most one transparent reconnect-and-retry per failed call
        - Single-flight reconnection with exponential backoff
        - Background health probe of a connection that recently failed
        - Best-effort shutdown that never raises

    Usage:
        gateway = ToolGateway(GatewayConfig())
        gateway.initialize()
        result = gateway.call_tool("browser_navigate", {"url": "https://example.com"})
        gateway.shutdown()
    """

    def __init__(
        self,
        config: GatewayConfig,
        channel_factory: Optional[Callable[[], McpHttpChannel]] = None,
        launcher: Callable[[list[str]], subprocess.Popen] = launch_server,
        prober: Optional[Callable[[], Optional[str]]] = None,
    ):
        """Initialize the gateway.

        Args:
            config: Gateway configuration
            channel_factory: Creates a fresh, unopened channel per connection
            launcher: Spawns the server process from an argv list
            prober: Liveness probe returning None when alive, else an error text
        """
        self.config = config
        self._channel_factory = channel_factory or (
            lambda: McpHttpChannel(config.base_url, config.call_timeout_s)
        )
        self._launcher = launcher
        self._probe = prober or self._http_probe

        self._channel: Optional[McpHttpChannel] = None
        self._process: Optional[subprocess.Popen] = None
        self._tools: list[ToolSpec] = []
        self._state = GatewayState.DISCONNECTED

        self._lock = threading.Lock()
        self._reconnecting = False
        self._reconnect_done = threading.Event()
        self._reconnect_done.set()
        self._reconnect_outcome = False
        self.reconnect_attempts = 0

        self.last_success: Optional[float] = None
        self.last_failure: Optional[float] = None

        self._health_task: Optional[ScheduledTask] = None
        self._shutdown_token = CancellationToken()

    @property
    def state(self) -> GatewayState:
        return self._state

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnecting

    def _set_state(self, state: GatewayState) -> None:
        if state != self._state:
            logger.debug("Gateway state %s -> %s", self._state.value, state.value)
            self._state = state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Start (or attach to) the server, connect, and load the tool catalog.

        Resets the reconnect budget, so this is also the way out of FAILED.

        Raises:
            GatewayStartupError: If the server never becomes reachable
        """
        logger.info("Initializing tool gateway...")
        self._shutdown_token = CancellationToken()
        self.reconnect_attempts = 0
        self._start()
        self._start_health_check()

    def _start(self) -> None:
        self._set_state(GatewayState.CONNECTING)
        try:
            if self.config.owns_process:
                logger.info("Starting automation server on port %d...", self.config.server_port)
                self._process = self._launcher(self.config.command)
                logger.info("Automation server process started with PID: %s", self._process.pid)

            self._wait_until_alive()

            logger.info("Connecting to automation server at %s...", self.config.base_url)
            channel = self._channel_factory()
            self._channel = channel
            channel.open()
            self._tools = channel.list_tools()
            logger.info("Available tools: %s", ", ".join(t.name for t in self._tools))
            self._set_state(GatewayState.READY)
        except BrowserAgentError as e:
            self._teardown()
            self._set_state(GatewayState.DISCONNECTED)
            if isinstance(e, GatewayStartupError):
                raise
            raise GatewayStartupError(f"Could not connect to automation server: {e}") from e

    def _http_probe(self) -> Optional[str]:
        try:
            response = httpx.get(
                f"{self.config.base_url}/health",
                timeout=self.config.probe_timeout_s,
            )
        except httpx.HTTPError as e:
            return str(e) or type(e).__name__
        # Any 2xx-4xx status means the server is up
        if 200 <= response.status_code < 500:
            return None
        return f"Server not ready, status code: {response.status_code}"

    def _wait_until_alive(self) -> None:
        cfg = self.config
        last_error = "no attempt made"
        logger.info("Waiting for automation server to be ready...")

        for attempt in range(cfg.startup_attempts):
            if self._process is not None and self._process.poll() is not None:
                raise GatewayStartupError(
                    f"Automation server exited with code {self._process.returncode}"
                )

            error = self._probe()
            if error is None:
                logger.info("Automation server is ready")
                return
            last_error = error

            delay = min(cfg.startup_max_delay_s, cfg.startup_min_delay_s * cfg.startup_backoff_factor ** attempt)
            logger.debug(
                "Health check attempt %d/%d failed. Retrying in %.1fs...",
                attempt + 1, cfg.startup_attempts, delay,
            )
            if self._shutdown_token.wait(delay):
                raise GatewayStartupError("Shutdown requested during startup")

        raise GatewayStartupError(
            f"Automation server did not become ready after {cfg.startup_attempts} attempts. "
            f"Last error: {last_error}"
        )

    def shutdown(self) -> None:
        """Release the channel and terminate any owned process. Never raises."""
        self._shutdown_token.cancel()
        self._stop_health_check()
        self._teardown()
        self._set_state(GatewayState.DISCONNECTED)
        logger.info("Tool gateway shut down")

    def _teardown(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                logger.debug("Error closing channel: %s", e)

        process, self._process = self._process, None
        if process is not None:
            try:
                process.terminate()
                try:
                    process.wait(timeout=self.config.terminate_grace_s)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait(timeout=self.config.terminate_grace_s)
                logger.info("Automation server process terminated")
            except Exception as e:
                logger.debug("Error killing server process: %s", e)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def list_tools(self) -> list[ToolSpec]:
        """Return the cached tool catalog."""
        return list(self._tools)

    def call_tool(
        self,
        name: str,
        arguments: Optional[dict[str, Any]] = None,
        streaming: bool = False,
    ) -> ToolResult:
        """Forward a tool call to the server.

        Args:
            name: Tool name
            arguments: Tool arguments
            streaming: True for screenshot-stream calls (logged at VERBOSE)

        Returns:
            The tool result (which may itself report ``is_error``)

        Raises:
            GatewayUnavailable: No connection (reconnecting or failed)
            GatewayConnectionError: Connection failure that survived one retry
            ToolExecutionError: The server rejected the call
        """
        arguments = arguments or {}
        level = VERBOSE if streaming else logging.INFO
        logger.log(level, "Calling tool: %s with args: %s", name, arguments)

        try:
            result = self._invoke(name, arguments)
        except GatewayConnectionError as error:
            self._record_failure()
            logger.warning("Detected automation server issue (%s), attempting to reconnect...", error)
            if not self.reconnect():
                raise
            logger.info("Retrying tool %s after reconnection...", name)
            try:
                result = self._invoke(name, arguments)
            except BrowserAgentError as retry_error:
                self._record_failure()
                logger.error("Retry failed for tool %s: %s", name, retry_error)
                raise error from retry_error
        except GatewayUnavailable:
            raise
        except BrowserAgentError as error:
            self._record_failure()
            if not streaming:
                logger.error("Error calling tool %s: %s", name, error)
            raise

        self._record_success()
        logger.log(level, "Tool %s completed (isError=%s)", name, result.is_error)
        return result

    def take_screenshot(self) -> Optional[bytes]:
        """Capture the page through the screenshot tool.

        Returns:
            Decoded image bytes, or None if the result carried no image
        """
        result = self.call_tool(SCREENSHOT_TOOL, {}, streaming=True)
        for image in result.images:
            try:
                return base64.b64decode(_DATA_URL_PREFIX.sub("", image.data), validate=True)
            except ValueError as e:
                raise ToolExecutionError(f"Invalid screenshot image data: {e}") from e
        logger.log(VERBOSE, "No image data found in screenshot result")
        return None

    def _invoke(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        channel = self._channel
        if self._state == GatewayState.FAILED:
            raise GatewayUnavailable(
                "Automation server connection failed; re-initialize the gateway"
            )
        if self._reconnecting or self._state == GatewayState.CONNECTING:
            raise GatewayUnavailable("Automation client not available (reconnecting)")
        if channel is None:
            if self._state == GatewayState.DEGRADED:
                # A previous reconnect failed; let the caller try again
                raise GatewayConnectionError("Connection lost after a failed reconnect")
            raise GatewayUnavailable("Automation client not initialized")
        return channel.call_tool(name, arguments)

    def _record_success(self) -> None:
        with self._lock:
            self.last_success = time.monotonic()
            self.last_failure = None
            self.reconnect_attempts = 0

    def _record_failure(self) -> None:
        with self._lock:
            self.last_failure = time.monotonic()

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def reconnect(self) -> bool:
        """Tear down and re-establish the connection.

        Only one reconnect runs at a time; callers arriving while one is in
        flight wait for it and share its outcome.

        Returns:
            True if the connection is usable again
        """
        with self._lock:
            if self._reconnecting:
                in_flight = True
            else:
                in_flight = False
                if self.reconnect_attempts >= self.config.max_reconnect_attempts:
                    logger.error(
                        "Max reconnection attempts (%d) reached, giving up",
                        self.config.max_reconnect_attempts,
                    )
                    self._set_state(GatewayState.FAILED)
                    return False
                self._reconnecting = True
                self._reconnect_done.clear()
                self.reconnect_attempts += 1
                attempt = self.reconnect_attempts

        if in_flight:
            logger.warning("Reconnection already in progress, waiting for it...")
            self._reconnect_done.wait()
            return self._reconnect_outcome

        success = False
        try:
            self._set_state(GatewayState.DEGRADED)
            logger.info("Reconnection attempt %d/%d...", attempt, self.config.max_reconnect_attempts)
            self._stop_health_check()
            self._teardown()

            backoff = min(
                self.config.reconnect_base_delay_s * 2 ** (attempt - 1),
                self.config.reconnect_max_delay_s,
            )
            logger.info("Waiting %.1fs before reconnecting...", backoff)
            if self._shutdown_token.wait(backoff):
                return False

            self._start()
            success = True
            self.reconnect_attempts = 0
            self._start_health_check()
            logger.info("Reconnection successful!")
        except GatewayStartupError as e:
            logger.error("Reconnection failed: %s", e)
            if attempt >= self.config.max_reconnect_attempts:
                self._set_state(GatewayState.FAILED)
            else:
                self._set_state(GatewayState.DEGRADED)
        finally:
            with self._lock:
                self._reconnecting = False
                self._reconnect_outcome = success
                self._reconnect_done.set()
        return success

    def should_probe(self, now: Optional[float] = None) -> bool:
        """Whether the background health probe should run now.

        Only a connection that has worked before, has failed since its last
        success, and has not succeeded for a while is probed.
        """
        now = time.monotonic() if now is None else now
        with self._lock:
            success, failure = self.last_success, self.last_failure
        if success is None or failure is None or self._reconnecting:
            return False
        if failure < success:
            return False
        return (
            now - failure < self.config.failure_window_s
            and now - success > self.config.success_stale_after_s
        )

    def _health_step(self) -> float:
        if self.should_probe():
            logger.warning("Detected potential automation server issue, running health check...")
            try:
                # Connection trouble is handed to the reconnect path by call_tool
                self.call_tool(self.config.health_probe_tool, {}, streaming=True)
                logger.log(VERBOSE, "Health check passed")
            except BrowserAgentError as e:
                logger.warning("Health check failed: %s", e)
        return self.config.health_check_interval_s

    def _start_health_check(self) -> None:
        self._stop_health_check()
        self._health_task = ScheduledTask(
            self._health_step,
            name="gateway-health-check",
            initial_delay=self.config.health_check_interval_s,
        ).start()

    def _stop_health_check(self) -> None:
        task, self._health_task = self._health_task, None
        if task is not None:
            task.cancel()
