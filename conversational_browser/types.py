"""
Type definitions for Conversational Browser.

Provides typed dataclasses for the structures shared by the gateway, the
screenshot pipeline, the agent loop and the conversation history.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


class GatewayState(str, Enum):
    """Connection state of the tool execution gateway."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"
    FAILED = "failed"


class Role(str, Enum):
    """Role of a conversation turn."""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


# =============================================================================
# Tool catalog and results
# =============================================================================

@dataclass(frozen=True)
class ToolSpec:
    """A tool advertised by the automation server.

    Attributes:
        name: Tool name (e.g., "browser_navigate")
        description: Human readable description
        input_schema: JSON schema of the tool arguments
    """
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mcp(cls, data: dict[str, Any]) -> "ToolSpec":
        """Create from an MCP ``tools/list`` entry."""
        return cls(
            name=data["name"],
            description=data.get("description") or f"Tool: {data['name']}",
            input_schema=data.get("inputSchema") or {
                "type": "object",
                "properties": {},
                "required": [],
            },
        )


@dataclass
class ToolCall:
    """A tool invocation requested by a model strategy."""
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TextBlock:
    """Text content block."""
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImageBlock:
    """Base64-encoded image content block."""
    data: str
    mime_type: str = "image/png"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "image", "data": self.data, "mimeType": self.mime_type}


ContentBlock = Union[TextBlock, ImageBlock]


@dataclass
class ToolResult:
    """Result of a tool call returned by the gateway.

    Content blocks are ordered and may mix text and image data.
    """
    content_blocks: list[ContentBlock] = field(default_factory=list)
    is_error: bool = False

    @property
    def text(self) -> str:
        """All text blocks joined with newlines."""
        return "\n".join(b.text for b in self.content_blocks if isinstance(b, TextBlock))

    @property
    def images(self) -> list[ImageBlock]:
        return [b for b in self.content_blocks if isinstance(b, ImageBlock)]

    @classmethod
    def from_mcp(cls, data: dict[str, Any]) -> "ToolResult":
        """Create from an MCP ``tools/call`` result."""
        blocks: list[ContentBlock] = []
        for item in data.get("content") or []:
            kind = item.get("type")
            if kind == "text":
                blocks.append(TextBlock(item.get("text", "")))
            elif kind == "image" and item.get("data"):
                blocks.append(ImageBlock(item["data"], item.get("mimeType", "image/png")))
        return cls(content_blocks=blocks, is_error=bool(data.get("isError", False)))

    @classmethod
    def error(cls, message: str) -> "ToolResult":
        return cls(content_blocks=[TextBlock(message)], is_error=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "content": [b.to_dict() for b in self.content_blocks],
            "isError": self.is_error,
        }


# =============================================================================
# Screenshots and visual verification
# =============================================================================

@dataclass(frozen=True)
class Marker:
    """Overlay point (e.g., last click location) in scaled coordinates."""
    x: int
    y: int
    created_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class Frame:
    """A captured screenshot.

    Frames are immutable; the cache replaces the whole frame on every capture
    so a reader's reference stays valid.
    """
    full_bytes: bytes
    scaled_bytes: bytes
    width: int
    height: int
    captured_at: float
    marker: Optional[Marker] = None
    scaled_width: int = 0
    scaled_height: int = 0


@dataclass(frozen=True)
class ChangeVerdict:
    """Outcome of comparing two frames.

    ``pixels_diff == -1`` signals a dimension mismatch, in which case
    ``changed`` is always True and ``percent_diff`` is 100.
    """
    changed: bool
    percent_diff: float
    pixels_diff: int
    total_pixels: int
    error: Optional[str] = None

    @property
    def dimension_mismatch(self) -> bool:
        return self.pixels_diff == -1

    @property
    def unknown(self) -> bool:
        """True when the comparison could not be performed."""
        return self.error is not None


# =============================================================================
# Conversation history
# =============================================================================

@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ToolCallPart:
    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultPart:
    call_id: str
    name: str
    blocks: tuple[ContentBlock, ...] = ()
    is_error: bool = False

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    @property
    def images(self) -> list[ImageBlock]:
        return [b for b in self.blocks if isinstance(b, ImageBlock)]


TurnPart = Union[TextPart, ToolCallPart, ToolResultPart]


@dataclass
class ConversationTurn:
    """One role-tagged unit of conversation history."""
    role: Role
    parts: list[TurnPart] = field(default_factory=list)

    @property
    def has_image(self) -> bool:
        return any(isinstance(p, ToolResultPart) and p.images for p in self.parts)

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]

    @classmethod
    def user(cls, text: str) -> "ConversationTurn":
        return cls(Role.USER, [TextPart(text)])


# =============================================================================
# Action log
# =============================================================================

@dataclass(frozen=True)
class ActionLogEntry:
    """An executed tool call. Never mutated once written."""
    timestamp: float
    tool_name: str
    arguments: dict[str, Any]
    success: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "toolName": self.tool_name,
            "arguments": dict(self.arguments),
            "success": self.success,
        }


@dataclass(frozen=True)
class ValidationRecord:
    """A pass/fail assertion raised by the model."""
    timestamp: float
    description: str
    result: str
    fail_reason: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.result == "pass"

    def to_dict(self) -> dict[str, Any]:
        data = {
            "timestamp": self.timestamp,
            "description": self.description,
            "result": self.result,
        }
        if self.fail_reason:
            data["failReason"] = self.fail_reason
        return data
