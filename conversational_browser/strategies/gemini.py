"""
Google Generative Language API strategy (Gemini).

Gemini may request several function calls in one reply; all of them are
executed before the next request.
"""

from typing import Any

from ..events import new_call_id
from ..schema import gemini_declaration
from ..types import ConversationTurn, ImageBlock, Role, TextBlock, ToolSpec
from .base import (
    DEFAULT_SYSTEM_PROMPT,
    VALIDATION_TOOL_NAME,
    ActionRequest,
    ModelResponse,
    ModelStrategy,
    merge_consecutive,
)

GEMINI_TOOL_RULES = f"""
IMPORTANT: You MUST use the browser tools to perform browser actions. Do not just describe what you would do - actually call the appropriate tools.

For example:
- To navigate: use browser_navigate
- To click: use browser_click
- To type: use browser_type
- To read the page: use browser_snapshot

MANDATORY: whenever you check a condition on the page, you MUST call {VALIDATION_TOOL_NAME} exactly once for that check, with result "pass" or "fail" and a reason when it fails.
Do not call any other tool between starting a check and recording its result."""


class GeminiStrategy(ModelStrategy):
    """Strategy for Gemini models via the ``generateContent`` endpoint."""

    name = "gemini"
    TEMPERATURE = 0.1

    @property
    def url(self) -> str:
        return f"{self.config.endpoint}/models/{self.model}:generateContent?key={self.config.api_key}"

    def system_prompt(self, tools: list[ToolSpec]) -> str:
        catalog = "\n".join(f"- {t.name}: {t.description.splitlines()[0] if t.description else ''}" for t in tools)
        return f"{DEFAULT_SYSTEM_PROMPT}\n\nAvailable tools:\n{catalog}\n{GEMINI_TOOL_RULES}"

    def format_request(
        self,
        system: str,
        tools: list[ToolSpec],
        turns: list[ConversationTurn],
    ) -> dict[str, Any]:
        contents = [self._format_turn(turn) for turn in turns]
        return {
            "contents": merge_consecutive([c for c in contents if c["parts"]], "parts"),
            "systemInstruction": {"parts": [{"text": system}]},
            "tools": [{"functionDeclarations": [gemini_declaration(t) for t in tools]}],
            "generationConfig": {"temperature": self.TEMPERATURE},
        }

    def _format_turn(self, turn: ConversationTurn) -> dict[str, Any]:
        if turn.role == Role.USER:
            return {"role": "user", "parts": [{"text": turn.text}]}

        if turn.role == Role.ASSISTANT:
            parts: list[dict[str, Any]] = []
            if turn.text:
                parts.append({"text": turn.text})
            for call in turn.tool_calls:
                parts.append({"functionCall": {"name": call.name, "args": call.arguments}})
            return {"role": "model", "parts": parts}

        parts = []
        images = []
        for result in turn.tool_results:
            content = [
                {"type": "text", "text": block.text}
                for block in result.blocks
                if isinstance(block, TextBlock)
            ]
            parts.append({
                "functionResponse": {
                    "name": result.name,
                    "response": {"content": content, "isError": result.is_error},
                }
            })
            images.extend(b for b in result.blocks if isinstance(b, ImageBlock))
        # Screenshots follow the function responses as inline data
        for image in images:
            parts.append({"inlineData": {"mimeType": image.mime_type, "data": image.data}})
        return {"role": "user", "parts": parts}

    def send(self, request: dict[str, Any]) -> dict[str, Any]:
        return self._post(self.url, request, {"Content-Type": "application/json"})

    def parse_response(self, raw: dict[str, Any]) -> ModelResponse:
        candidates = raw.get("candidates") or []
        if not candidates:
            reason = (raw.get("promptFeedback") or {}).get("blockReason")
            return ModelResponse(text="", stop_reason=reason)

        candidate = candidates[0]
        texts = []
        actions = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "functionCall" in part:
                call = part["functionCall"]
                actions.append(ActionRequest(
                    id=call.get("id") or new_call_id(),
                    name=call["name"],
                    arguments=call.get("args") or {},
                ))
            elif part.get("text"):
                texts.append(part["text"])
        return ModelResponse(
            text="\n".join(texts),
            actions=actions,
            stop_reason=candidate.get("finishReason"),
        )
