"""
Tool schema conversion.

Tool input schemas arrive as JSON Schema from the automation server. Each
model vendor accepts a different subset, so schemas are parsed into a small
tree of typed nodes once and rendered per vendor.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from .types import ToolSpec

SCALAR_KINDS = ("string", "number", "integer", "boolean")

# Keys the Gemini function-declaration schema accepts
GEMINI_FIELDS = ("type", "properties", "required", "description", "enum", "items", "default")


@dataclass
class SchemaNode:
    """One node of a tool argument schema.

    Attributes:
        kind: object, array, string, number, integer, boolean or enum
        description: Optional description
        properties: Child nodes of an object
        required: Required property names of an object
        items: Element node of an array
        enum: Allowed values of an enum
        enum_type: JSON type of the enum values
        default: Default value, if any
    """
    kind: str
    description: Optional[str] = None
    properties: dict[str, "SchemaNode"] = field(default_factory=dict)
    required: list[str] = field(default_factory=list)
    items: Optional["SchemaNode"] = None
    enum: list[Any] = field(default_factory=list)
    enum_type: str = "string"
    default: Any = None


def _pick_type(raw: dict[str, Any]) -> str:
    kind = raw.get("type")
    if isinstance(kind, list):
        kind = next((k for k in kind if k != "null"), "string")
    if kind:
        return kind
    if "properties" in raw:
        return "object"
    if "items" in raw:
        return "array"
    return "string"


def parse_schema(raw: Optional[dict[str, Any]]) -> SchemaNode:
    """Parse a JSON Schema dict into a SchemaNode tree."""
    if not isinstance(raw, dict) or not raw:
        return SchemaNode("object")

    # Nullable unions ("anyOf": [{...}, {"type": "null"}]) collapse to their first real variant
    for union in ("anyOf", "oneOf"):
        variants = [v for v in raw.get(union) or [] if isinstance(v, dict) and v.get("type") != "null"]
        if variants:
            merged = {**variants[0], **{k: v for k, v in raw.items() if k != union}}
            return parse_schema(merged)

    description = raw.get("description")
    default = raw.get("default")
    kind = _pick_type(raw)

    if raw.get("enum"):
        return SchemaNode(
            "enum",
            description=description,
            enum=list(raw["enum"]),
            enum_type=kind,
            default=default,
        )

    if kind == "object":
        properties = {
            name: parse_schema(child)
            for name, child in (raw.get("properties") or {}).items()
        }
        required = [name for name in raw.get("required") or [] if name in properties]
        return SchemaNode(
            "object",
            description=description,
            properties=properties,
            required=required,
            default=default,
        )

    if kind == "array":
        return SchemaNode(
            "array",
            description=description,
            items=parse_schema(raw.get("items") or {"type": "string"}),
            default=default,
        )

    if kind not in SCALAR_KINDS:
        kind = "string"
    return SchemaNode(kind, description=description, default=default)


def render_json_schema(node: SchemaNode) -> dict[str, Any]:
    """Render a node as plain JSON Schema (Anthropic and OpenAI dialects)."""
    if node.kind == "enum":
        out: dict[str, Any] = {"type": node.enum_type, "enum": list(node.enum)}
    elif node.kind == "object":
        out = {
            "type": "object",
            "properties": {name: render_json_schema(child) for name, child in node.properties.items()},
        }
        if node.required:
            out["required"] = list(node.required)
    elif node.kind == "array":
        out = {"type": "array", "items": render_json_schema(node.items or SchemaNode("string"))}
    else:
        out = {"type": node.kind}

    if node.description:
        out["description"] = node.description
    if node.default is not None:
        out["default"] = node.default
    return out


def render_gemini(node: SchemaNode) -> dict[str, Any]:
    """Render a node in the schema subset Gemini function declarations accept."""
    out = render_json_schema(node)
    if node.kind == "object":
        out["properties"] = {name: render_gemini(child) for name, child in node.properties.items()}
    elif node.kind == "array":
        out["items"] = render_gemini(node.items or SchemaNode("string"))
    # Gemini rejects non-string enum values
    if node.kind == "enum":
        out["type"] = "string"
        out["enum"] = [str(v) for v in node.enum]
    return {k: v for k, v in out.items() if k in GEMINI_FIELDS}


def anthropic_tool(tool: ToolSpec) -> dict[str, Any]:
    return {
        "name": tool.name,
        "description": tool.description,
        "input_schema": render_json_schema(parse_schema(tool.input_schema)),
    }


def gemini_declaration(tool: ToolSpec) -> dict[str, Any]:
    return {
        "name": tool.name,
        "description": tool.description,
        "parameters": render_gemini(parse_schema(tool.input_schema)),
    }
