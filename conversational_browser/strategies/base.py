"""
Model strategy interface.

A strategy turns the conversation history into one provider request, sends
it, and parses the reply into text plus requested actions. The agent loop is
the same for every provider; only the strategy differs.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

import httpx
from pydantic import BaseModel, Field

from ..errors import (
    ContextOverflow,
    ProviderNotConfigured,
    ProviderRequestError,
    UnknownActionError,
)
from ..providers import ProviderConfig
from ..types import ConversationTurn, Role, TextPart, ToolCall, ToolCallPart, ToolSpec

logger = logging.getLogger(__name__)

VALIDATION_TOOL_NAME = "record_validation"

VALIDATION_TOOL = ToolSpec(
    name=VALIDATION_TOOL_NAME,
    description=(
        "Record the outcome of checking a condition on the page. Call it exactly once "
        "per assertion the user asked you to verify, with result 'pass' or 'fail'."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "description": {"type": "string", "description": "What was checked"},
            "result": {"type": "string", "enum": ["pass", "fail"]},
            "reason": {"type": "string", "description": "Why the check failed (for 'fail')"},
        },
        "required": ["description", "result"],
    },
)

# Fragments of provider error bodies that mean the request was too large
CONTEXT_OVERFLOW_MARKERS = (
    "context length",
    "context_length_exceeded",
    "maximum context",
    "context window",
    "prompt is too long",
    "too many tokens",
    "exceeds the maximum number of tokens",
    "input token count",
)

DEFAULT_SYSTEM_PROMPT = """You are a browser automation assistant. You control a real web browser through the tools listed below.

Always use the tools to act on the page; do not just describe what you would do.
After each action you receive the tool output and a visual check telling you whether the page changed.
If an action had no visible effect, try a different approach instead of repeating it.
When the user asks you to verify something on the page, record each check with the record_validation tool.
When the task is complete, reply with a short summary for the user."""


def merge_consecutive(messages: list[dict[str, Any]], content_key: str) -> list[dict[str, Any]]:
    """Merge adjacent messages of the same role.

    Providers that require alternating roles reject two user messages in a
    row, which happens when tool results are followed by a new user message.
    """
    merged: list[dict[str, Any]] = []
    for message in messages:
        if merged and merged[-1]["role"] == message["role"]:
            merged[-1][content_key].extend(message[content_key])
        else:
            merged.append({**message, content_key: list(message[content_key])})
    return merged


class ValidationArgs(BaseModel):
    """Arguments of the validation pseudo-tool."""

    description: str = Field(min_length=1)
    result: Literal["pass", "fail"]
    reason: Optional[str] = None


@dataclass
class ActionRequest:
    """One action requested by the model.

    Attributes:
        id: Provider call ID (generated when the provider has none)
        name: Requested tool or action name
        arguments: Requested arguments
        parse_error: Set when the action text could not be parsed
    """
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    parse_error: Optional[str] = None


@dataclass
class ModelResponse:
    """A parsed model reply."""
    text: str = ""
    actions: list[ActionRequest] = field(default_factory=list)
    stop_reason: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return not self.actions


class ModelStrategy(ABC):
    """Base class for provider strategies.

    Subclasses implement the request and response formats. The HTTP retry
    loop, error mapping and history bookkeeping are shared.
    """

    name = "base"

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[httpx.Client] = None,
        max_retries: int = 3,
    ):
        """Initialize the strategy.

        Args:
            config: Provider configuration
            client: Optional HTTP client (a new one is created by default)
            max_retries: Retries on rate limiting and server errors

        Raises:
            ProviderNotConfigured: If the provider has no usable credentials
        """
        config.require_valid()
        self.config = config
        self.model = config.effective_model
        self.max_retries = max_retries
        self.client = client or httpx.Client(timeout=config.timeout_s)

    # ------------------------------------------------------------------
    # Provider specific
    # ------------------------------------------------------------------

    @abstractmethod
    def format_request(
        self,
        system: str,
        tools: list[ToolSpec],
        turns: list[ConversationTurn],
    ) -> dict[str, Any]:
        """Build the provider request payload."""

    @abstractmethod
    def send(self, request: dict[str, Any]) -> dict[str, Any]:
        """Send a request and return the decoded response body."""

    @abstractmethod
    def parse_response(self, raw: dict[str, Any]) -> ModelResponse:
        """Parse a response body."""

    def system_prompt(self, tools: list[ToolSpec]) -> str:
        return DEFAULT_SYSTEM_PROMPT

    def map_action(self, action: ActionRequest) -> ToolCall:
        """Map a requested action to a gateway tool call.

        Raises:
            UnknownActionError: If the action cannot be mapped
        """
        if action.parse_error:
            raise UnknownActionError(action.name, action.parse_error)
        return ToolCall(name=action.name, arguments=dict(action.arguments))

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def next_step(self, tools: list[ToolSpec], turns: list[ConversationTurn]) -> ModelResponse:
        """Run one model round-trip over the given history."""
        all_tools = list(tools) + [VALIDATION_TOOL]
        request = self.format_request(self.system_prompt(all_tools), all_tools, turns)
        response = self.parse_response(self.send(request))
        logger.debug(
            "%s replied with %d action(s), stop_reason=%s",
            self.name, len(response.actions), response.stop_reason,
        )
        return response

    def assistant_turn(self, response: ModelResponse) -> ConversationTurn:
        """Build the history turn recording a model reply."""
        parts: list = []
        if response.text:
            parts.append(TextPart(response.text))
        for action in response.actions:
            parts.append(ToolCallPart(action.id, action.name, dict(action.arguments)))
        return ConversationTurn(Role.ASSISTANT, parts)

    def _post(
        self,
        url: str,
        payload: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """POST with retries on 429 and 5xx.

        Raises:
            ProviderNotConfigured: On 401/403 or a rejected API key
            ContextOverflow: If the request exceeds the model's context
            ProviderRequestError: On any other failure
        """
        provider = self.config.provider.value
        display = self.config.display_name
        headers = headers or {"Content-Type": "application/json"}

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                wait_time = 2 ** (attempt + 1)
                logger.warning(
                    "%s request failed (%s), retrying in %ds (%d/%d)",
                    display, last_error, wait_time, attempt, self.max_retries,
                )
                time.sleep(wait_time)

            try:
                response = self.client.post(url, json=payload, headers=headers)
            except httpx.TimeoutException as e:
                raise ProviderRequestError(
                    f"{display} did not respond within {self.config.timeout_s:.0f}s"
                ) from e
            except httpx.TransportError as e:
                last_error = ProviderRequestError(f"Could not reach {display}: {e}")
                continue

            status = response.status_code
            if status in (401, 403):
                raise ProviderNotConfigured(
                    f"{display} rejected the request credentials",
                    provider=provider,
                    status=status,
                )
            if status == 429 or status >= 500:
                last_error = ProviderRequestError(f"{display} returned {status}", status=status)
                continue
            if status >= 400:
                body = response.text
                lowered = body.lower()
                if any(marker in lowered for marker in CONTEXT_OVERFLOW_MARKERS):
                    raise ContextOverflow(f"{display} rejected the request: context too large", status=status)
                if "api key" in lowered or "api_key" in lowered:
                    raise ProviderNotConfigured(
                        f"{display} rejected the API key",
                        provider=provider,
                        status=401,
                    )
                raise ProviderRequestError(f"{display} returned {status}: {body[:300]}", status=status)

            try:
                return response.json()
            except ValueError as e:
                raise ProviderRequestError(f"{display} returned invalid JSON: {e}") from e

        raise last_error

    def close(self) -> None:
        self.client.close()
