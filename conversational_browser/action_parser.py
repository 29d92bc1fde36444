"""
Free-text action parsing for vision-style models.

Vision models answer with loosely structured text. The action is extracted
from an ``<action>`` tag, a fenced code block, or a bare JSON object (tried
in that order), validated with pydantic, and normalized to a browser tool
call through an alias table.
"""

import json
import re
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import UnknownActionError
from .types import ToolCall

TAG_PATTERN = re.compile(r"<action>\s*([\s\S]*?)\s*</action>", re.IGNORECASE)
FENCE_PATTERN = re.compile(r"```(?:json|action)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
# Bare ``verb argument`` form allowed inside an explicit action tag
VERB_PATTERN = re.compile(r"^([A-Za-z][\w.-]*)(?:\s*[:(]\s*|\s+)?(.*?)\)?$", re.DOTALL)


class ParsedAction(BaseModel):
    """An action emitted by a free-text model."""

    action: str = Field(min_length=1, description="The action to take")
    args: dict[str, Any] = Field(default_factory=dict, description="Action arguments")
    rationale: Optional[str] = Field(default=None, description="Short reason for this action")
    final_answer: Optional[str] = Field(
        default=None,
        description="Final answer when the action is terminal",
    )

    @model_validator(mode="before")
    @classmethod
    def _coerce_shape(cls, data: Any) -> Any:
        # Models drift between {"action", "args"}, {"name", "arguments"} and flat shapes
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ("name", "tool", "command", "action_type"):
            if "action" not in data and isinstance(data.get(key), str):
                data["action"] = data.pop(key)
        for key in ("arguments", "params", "parameters", "input"):
            if "args" not in data and isinstance(data.get(key), dict):
                data["args"] = data.pop(key)
        known = {"action", "args", "rationale", "final_answer", "reason", "thought"}
        extras = {k: data.pop(k) for k in list(data) if k not in known}
        if extras:
            data["args"] = {**extras, **(data.get("args") or {})}
        for key in ("reason", "thought"):
            if "rationale" not in data and key in data:
                data["rationale"] = data.pop(key)
            else:
                data.pop(key, None)
        return data


# =============================================================================
# Extraction
# =============================================================================

def _loads(candidate: str) -> Optional[dict[str, Any]]:
    candidate = candidate.strip()
    for text in (candidate, re.sub(r",\s*([}\]])", r"\1", candidate)):
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            continue
        return data if isinstance(data, dict) else None
    start, end = candidate.find("{"), candidate.rfind("}")
    if start != -1 and end > start:
        try:
            data = json.loads(candidate[start:end + 1])
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None
    return None


def _validate(data: dict[str, Any]) -> Optional[ParsedAction]:
    try:
        return ParsedAction.model_validate(data)
    except ValidationError:
        return None


def _parse_verb(body: str) -> Optional[ParsedAction]:
    match = VERB_PATTERN.match(body.strip())
    if not match:
        return None
    verb, rest = match.group(1).strip(), match.group(2).strip().strip("\"'")
    args = {"value": rest} if rest else {}
    return ParsedAction(action=verb, args=args)


def extract_action(text: str) -> Optional[ParsedAction]:
    """Extract the action from a model response.

    Args:
        text: Raw assistant text

    Returns:
        The parsed action, or None if the text carries no action

    Raises:
        UnknownActionError: If an explicit ``<action>`` block cannot be parsed
    """
    if not text:
        return None

    tagged = TAG_PATTERN.search(text)
    if tagged:
        body = tagged.group(1)
        fenced = FENCE_PATTERN.search(body)
        if fenced:
            body = fenced.group(1)
        data = _loads(body)
        parsed = _validate(data) if data is not None else _parse_verb(body)
        if parsed is None:
            raise UnknownActionError(
                body[:80],
                f"Could not parse the action block: {body[:200]!r}. "
                'Respond with <action>{"action": "...", "args": {...}}</action>.',
            )
        return parsed

    for fenced in FENCE_PATTERN.finditer(text):
        data = _loads(fenced.group(1))
        if data is not None and {"action", "name", "tool"} & data.keys():
            parsed = _validate(data)
            if parsed is not None:
                return parsed

    data = _loads(FENCE_PATTERN.sub("", text))
    if data is not None:
        return _validate(data)
    return None


# =============================================================================
# Normalization
# =============================================================================

# Canonical browser tool -> accepted action names
ACTION_ALIASES: dict[str, tuple[str, ...]] = {
    "browser_navigate": (
        "navigate", "goto", "go_to", "open", "open_url", "visit", "load", "load_url",
        "browse", "go", "url", "navigate_to",
    ),
    "browser_navigate_back": ("back", "go_back", "navigate_back", "previous_page", "history_back"),
    "browser_navigate_forward": ("forward", "go_forward", "navigate_forward", "next_page"),
    "browser_click": ("click", "tap", "press_element", "click_element", "left_click", "select_element"),
    "browser_mouse_click_xy": (
        "click_xy", "click_at", "click_coordinates", "mouse_click", "click_position",
        "coordinate_click",
    ),
    "browser_mouse_move_xy": ("move", "mouse_move", "move_mouse", "move_to", "hover_xy"),
    "browser_mouse_drag_xy": ("drag_xy", "mouse_drag", "drag_to_position"),
    "browser_hover": ("hover", "mouse_over", "hover_element"),
    "browser_drag": ("drag", "drag_and_drop", "drag_drop"),
    "browser_type": (
        "type", "type_text", "input", "input_text", "enter_text", "write", "fill",
        "fill_field", "set_text", "text",
    ),
    "browser_fill_form": ("fill_form", "form_fill", "fill_fields"),
    "browser_press_key": ("press", "press_key", "key", "keypress", "key_press", "hotkey", "send_key"),
    "browser_select_option": ("select", "select_option", "choose", "choose_option", "dropdown"),
    "browser_snapshot": (
        "snapshot", "page_snapshot", "get_snapshot", "read_page", "accessibility_tree",
        "inspect", "observe",
    ),
    "browser_take_screenshot": ("screenshot", "take_screenshot", "capture", "capture_screen"),
    "browser_wait_for": ("wait", "wait_for", "sleep", "pause", "delay", "wait_for_text"),
    "browser_evaluate": ("evaluate", "eval", "run_js", "execute_js", "javascript", "script"),
    "browser_console_messages": ("console", "console_messages", "get_console", "logs"),
    "browser_network_requests": ("network", "network_requests", "requests"),
    "browser_file_upload": ("upload", "file_upload", "upload_file", "attach_file"),
    "browser_handle_dialog": ("dialog", "handle_dialog", "accept_dialog", "dismiss_dialog", "alert"),
    "browser_resize": ("resize", "resize_window", "set_viewport", "viewport"),
    "browser_tabs": ("tabs", "tab", "new_tab", "switch_tab", "close_tab", "list_tabs"),
    "browser_close": ("close", "close_browser", "quit", "exit_browser"),
    "record_validation": (
        "validate", "validation", "assert", "check", "verify", "record_validation",
        "assertion",
    ),
}

TERMINAL_ACTIONS = frozenset({
    "done", "finish", "finished", "answer", "final_answer", "complete", "completed",
    "stop", "respond", "reply", "task_complete",
})

# Canonical argument name -> accepted spellings, per tool
ARGUMENT_ALIASES: dict[str, dict[str, tuple[str, ...]]] = {
    "browser_navigate": {"url": ("url", "href", "link", "address", "value", "target")},
    "browser_click": {
        "element": ("element", "description", "target", "label", "name"),
        "ref": ("ref", "element_ref", "id"),
    },
    "browser_mouse_click_xy": {
        "element": ("element", "description", "target", "label"),
        "x": ("x",),
        "y": ("y",),
    },
    "browser_mouse_move_xy": {"element": ("element", "description", "target"), "x": ("x",), "y": ("y",)},
    "browser_hover": {"element": ("element", "description", "target"), "ref": ("ref",)},
    "browser_type": {
        "element": ("element", "description", "target", "field", "label"),
        "ref": ("ref", "element_ref"),
        "text": ("text", "value", "content", "input", "string"),
        "submit": ("submit", "press_enter", "enter"),
    },
    "browser_press_key": {"key": ("key", "keys", "value", "combo", "text")},
    "browser_select_option": {
        "element": ("element", "description", "target"),
        "ref": ("ref",),
        "values": ("values", "value", "option", "options"),
    },
    "browser_wait_for": {
        "time": ("time", "seconds", "duration", "value", "ms"),
        "text": ("text", "for_text"),
        "textGone": ("textGone", "text_gone"),
    },
    "browser_evaluate": {"function": ("function", "script", "code", "value", "js")},
    "browser_resize": {"width": ("width", "w"), "height": ("height", "h")},
    "record_validation": {
        "description": ("description", "assertion", "check", "what", "value"),
        "result": ("result", "status", "verdict", "outcome"),
        "reason": ("reason", "fail_reason", "failReason", "why"),
    },
}


def normalize_name(name: str) -> str:
    """Case and separator insensitive key for an action name."""
    return re.sub(r"[\s_\-.]+", "", name.strip().lower())


def _build_lookup() -> dict[str, str]:
    lookup: dict[str, str] = {}
    for tool, aliases in ACTION_ALIASES.items():
        lookup[normalize_name(tool)] = tool
        for alias in aliases:
            lookup.setdefault(normalize_name(alias), tool)
    return lookup


_LOOKUP = _build_lookup()
_TERMINAL = frozenset(normalize_name(a) for a in TERMINAL_ACTIONS)


def is_terminal(action: ParsedAction) -> bool:
    return normalize_name(action.action) in _TERMINAL


def resolve_tool_name(name: str) -> str:
    """Map an action name to its canonical tool name.

    Raises:
        UnknownActionError: If the name matches no known tool
    """
    key = normalize_name(name)
    tool = _LOOKUP.get(key)
    if tool is None and key.startswith("browser"):
        tool = _LOOKUP.get(key[len("browser"):])
    if tool is None:
        raise UnknownActionError(
            name,
            f"Unknown action '{name}'. Use one of: "
            + ", ".join(sorted(a for a in (aliases[0] for aliases in ACTION_ALIASES.values())))
            + ", or 'done' with a final_answer.",
        )
    return tool


def _normalize_args(tool: str, args: dict[str, Any]) -> dict[str, Any]:
    aliases = ARGUMENT_ALIASES.get(tool)
    if not aliases:
        return dict(args)
    out: dict[str, Any] = {}
    consumed: set[str] = set()
    for canonical, spellings in aliases.items():
        for spelling in spellings:
            if spelling in args and spelling not in consumed:
                out[canonical] = args[spelling]
                consumed.add(spelling)
                break
    for key, value in args.items():
        if key not in consumed and key not in out:
            out[key] = value
    return out


def to_tool_call(action: ParsedAction) -> ToolCall:
    """Map a non-terminal parsed action to a gateway tool call.

    Raises:
        UnknownActionError: If the action matches no known tool
    """
    tool = resolve_tool_name(action.action)
    args = _normalize_args(tool, action.args)

    # Element clicks given as coordinates go through the vision click tool
    if tool == "browser_click" and "ref" not in args and "x" in args and "y" in args:
        tool = "browser_mouse_click_xy"
        args = _normalize_args(tool, args)
    if tool in ("browser_mouse_click_xy", "browser_click", "browser_hover", "browser_type"):
        args.setdefault("element", action.rationale or "target element")
    if tool == "browser_select_option" and isinstance(args.get("values"), str):
        args["values"] = [args["values"]]
    if tool == "browser_wait_for" and isinstance(args.get("time"), str):
        try:
            args["time"] = float(args["time"])
        except ValueError:
            args["text"] = args.pop("time")
    for coordinate in ("x", "y"):
        if isinstance(args.get(coordinate), str):
            try:
                args[coordinate] = float(args[coordinate])
            except ValueError:
                raise UnknownActionError(
                    action.action,
                    f"Coordinate {coordinate}={args[coordinate]!r} is not a number",
                ) from None
    return ToolCall(name=tool, arguments=args)
