"""
Free-text action strategy for vision models.

Targets OpenAI-compatible chat completion APIs (LM Studio, OpenAI). The model
sees the page screenshot and answers with one textual action per turn, which
is parsed and normalized to a browser tool call.
"""

import re
from typing import Any

from ..action_parser import ParsedAction, extract_action, is_terminal, to_tool_call
from ..errors import UnknownActionError
from ..events import new_call_id
from ..types import ConversationTurn, Role, ToolCall, ToolSpec
from .base import DEFAULT_SYSTEM_PROMPT, ActionRequest, ModelResponse, ModelStrategy

ACTION_FORMAT = """Respond with a short thought, then exactly ONE action in this format:
<action>{"action": "<tool name>", "args": {...}}</action>

Coordinates refer to the screenshot you were shown.
When the task is complete, respond with:
<action>{"action": "done", "final_answer": "<summary for the user>"}</action>"""

_TAG_BLOCK = re.compile(r"<action>[\s\S]*?</action>", re.IGNORECASE)


def _describe_tool(tool: ToolSpec) -> str:
    properties = (tool.input_schema or {}).get("properties") or {}
    required = set((tool.input_schema or {}).get("required") or [])
    args = ", ".join(f"{name}{'' if name in required else '?'}" for name in properties)
    summary = tool.description.splitlines()[0] if tool.description else ""
    return f"- {tool.name}({args}): {summary}"


class VisionTextStrategy(ModelStrategy):
    """Strategy for vision models that emit actions as text."""

    name = "vision"
    TEMPERATURE = 0.1
    MAX_TOKENS = 1024

    @property
    def url(self) -> str:
        return f"{self.config.endpoint}/chat/completions"

    def system_prompt(self, tools: list[ToolSpec]) -> str:
        catalog = "\n".join(_describe_tool(t) for t in tools)
        return f"{DEFAULT_SYSTEM_PROMPT}\n\nAvailable actions:\n{catalog}\n\n{ACTION_FORMAT}"

    def format_request(
        self,
        system: str,
        tools: list[ToolSpec],
        turns: list[ConversationTurn],
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = [{"role": "system", "content": system}]
        for turn in turns:
            if turn.role == Role.USER:
                messages.append({"role": "user", "content": turn.text})
            elif turn.role == Role.ASSISTANT:
                messages.append({"role": "assistant", "content": turn.text})
            else:
                messages.append({"role": "user", "content": self._observation(turn)})
        return {
            "model": self.model,
            "messages": messages,
            "temperature": self.TEMPERATURE,
            "max_tokens": self.MAX_TOKENS,
        }

    @staticmethod
    def _observation(turn: ConversationTurn) -> list[dict[str, Any]]:
        content: list[dict[str, Any]] = []
        for result in turn.tool_results:
            status = "failed" if result.is_error else "succeeded"
            content.append({
                "type": "text",
                "text": f"Observation: {result.name} {status}.\n{result.text}",
            })
            for image in result.images:
                content.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{image.mime_type};base64,{image.data}"},
                })
        return content

    def send(self, request: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return self._post(self.url, request, headers)

    def parse_response(self, raw: dict[str, Any]) -> ModelResponse:
        choices = raw.get("choices") or []
        message = choices[0].get("message", {}) if choices else {}
        content = message.get("content") or ""
        stop_reason = choices[0].get("finish_reason") if choices else None

        try:
            parsed = extract_action(content)
        except UnknownActionError as e:
            # Unparseable action blocks go back to the model as an observation
            action = ActionRequest(new_call_id(), e.action, {}, parse_error=str(e))
            return ModelResponse(text=content, actions=[action], stop_reason=stop_reason)

        if parsed is None:
            return ModelResponse(text=content.strip(), stop_reason=stop_reason)

        if is_terminal(parsed):
            answer = parsed.final_answer or parsed.args.get("value") or parsed.args.get("answer")
            if not answer:
                answer = _TAG_BLOCK.sub("", content).strip()
            return ModelResponse(text=str(answer), stop_reason=stop_reason)

        action = ActionRequest(new_call_id(), parsed.action, dict(parsed.args))
        return ModelResponse(text=content, actions=[action], stop_reason=stop_reason)

    def map_action(self, action: ActionRequest) -> ToolCall:
        if action.parse_error:
            raise UnknownActionError(action.name, action.parse_error)
        return to_tool_call(ParsedAction(action=action.name, args=action.arguments))
