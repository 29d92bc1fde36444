"""
Anthropic Messages API strategy (Claude).

Uses native ``tool_use`` / ``tool_result`` content blocks.
"""

from typing import Any

from ..schema import anthropic_tool
from ..types import ConversationTurn, ImageBlock, Role, TextBlock, ToolSpec
from .base import ActionRequest, ModelResponse, ModelStrategy, merge_consecutive


class ClaudeStrategy(ModelStrategy):
    """Strategy for Claude models via the Anthropic Messages API."""

    name = "claude"
    ANTHROPIC_VERSION = "2023-06-01"
    MAX_TOKENS = 4096

    @property
    def url(self) -> str:
        return f"{self.config.endpoint}/messages"

    def format_request(
        self,
        system: str,
        tools: list[ToolSpec],
        turns: list[ConversationTurn],
    ) -> dict[str, Any]:
        messages = [self._format_turn(turn) for turn in turns]
        return {
            "model": self.model,
            "max_tokens": self.MAX_TOKENS,
            "system": system,
            "tools": [anthropic_tool(tool) for tool in tools],
            "messages": merge_consecutive([m for m in messages if m["content"]], "content"),
        }

    def _format_turn(self, turn: ConversationTurn) -> dict[str, Any]:
        if turn.role == Role.USER:
            return {"role": "user", "content": [{"type": "text", "text": turn.text}]}

        if turn.role == Role.ASSISTANT:
            content: list[dict[str, Any]] = []
            if turn.text:
                content.append({"type": "text", "text": turn.text})
            for call in turn.tool_calls:
                content.append({
                    "type": "tool_use",
                    "id": call.call_id,
                    "name": call.name,
                    "input": call.arguments,
                })
            return {"role": "assistant", "content": content}

        # Tool results travel in a user message
        results = []
        for result in turn.tool_results:
            blocks: list[dict[str, Any]] = []
            for block in result.blocks:
                if isinstance(block, TextBlock):
                    blocks.append({"type": "text", "text": block.text})
                elif isinstance(block, ImageBlock):
                    blocks.append({
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": block.mime_type,
                            "data": block.data,
                        },
                    })
            results.append({
                "type": "tool_result",
                "tool_use_id": result.call_id,
                "content": blocks or [{"type": "text", "text": "(no output)"}],
                "is_error": result.is_error,
            })
        return {"role": "user", "content": results}

    def send(self, request: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key or "",
            "anthropic-version": self.ANTHROPIC_VERSION,
        }
        return self._post(self.url, request, headers)

    def parse_response(self, raw: dict[str, Any]) -> ModelResponse:
        texts = []
        actions = []
        for block in raw.get("content") or []:
            kind = block.get("type")
            if kind == "text":
                texts.append(block.get("text", ""))
            elif kind == "tool_use":
                actions.append(ActionRequest(
                    id=block["id"],
                    name=block["name"],
                    arguments=block.get("input") or {},
                ))

        stop_reason = raw.get("stop_reason")
        # Only a tool_use stop asks for tool execution
        if stop_reason != "tool_use":
            actions = []
        return ModelResponse(text="\n".join(t for t in texts if t), actions=actions, stop_reason=stop_reason)
