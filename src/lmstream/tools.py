import inspect
import typing
from typing import Any, Callable

from pydantic import BaseModel, Field

# Tool choice is "auto", "required", "none", or the name of one tool.
AUTO = "auto"
REQUIRED = "required"
NONE = "none"

_TOOL_CHOICE_MODES = (AUTO, REQUIRED, NONE)


def _empty_parameters() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


class ToolDefinition(BaseModel):
    """A tool offered to the model, in vendor-neutral form.

    ``parameters`` is a JSON Schema object describing the arguments.
    Use :meth:`from_function` to derive one from a Python signature.
    """

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=_empty_parameters)

    @classmethod
    def from_function(cls, func: Callable) -> "ToolDefinition":
        properties = parse_properties(func)
        return cls(
            name=func.__name__,
            description=inspect.getdoc(func) or "",
            parameters={
                "type": "object",
                "properties": properties,
                "required": get_required_params(func),
            },
        )

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_responses(self) -> dict:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def to_anthropic(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }

    def to_gemini(self) -> dict:
        declaration = {"name": self.name, "parameters": strip_schema_field(self.parameters)}
        if self.description:
            declaration["description"] = self.description
        return declaration


def normalize_to_json_type(annotation: Any) -> str:
    origin = typing.get_origin(annotation) or annotation
    type_name = getattr(origin, "__name__", "str")
    type_mapping = {
        'str': 'string',
        'int': 'integer',
        'float': 'number',
        'bool': 'boolean',
        'NoneType': 'null',
        'dict': 'object',
        'list': 'array',
        'tuple': 'array',  # closest equivalent
        'set': 'array',    # closest equivalent
    }
    return type_mapping.get(type_name, 'string')


def parse_properties(func: Callable) -> dict[str, dict[str, str]]:
    signature = inspect.signature(func)
    properties = {}
    for param_name, param in signature.parameters.items():
        properties[param_name] = {
            "type": normalize_to_json_type(param.annotation),
            "description": "",
        }
    return properties


def get_required_params(func: Callable) -> list[str]:
    signature = inspect.signature(func)
    return [
        name
        for name, param in signature.parameters.items()
        if param.default == inspect.Parameter.empty
    ]


def strip_schema_field(schema: Any) -> Any:
    """Recursively drop ``$schema`` keys, which Gemini rejects."""
    if isinstance(schema, dict):
        return {k: strip_schema_field(v) for k, v in schema.items() if k != "$schema"}
    if isinstance(schema, list):
        return [strip_schema_field(item) for item in schema]
    return schema


# ----------------------------------------------------------------------
# Tool choice
# ----------------------------------------------------------------------

def openai_tool_choice(choice: str | None) -> str | dict | None:
    if not choice or choice in _TOOL_CHOICE_MODES:
        return choice
    return {"type": "function", "function": {"name": choice}}


def responses_tool_choice(choice: str | None) -> str | dict | None:
    if not choice or choice in _TOOL_CHOICE_MODES:
        return choice
    return {"type": "function", "name": choice}


def anthropic_tool_choice(choice: str | None) -> dict | None:
    """Anthropic calls "required" ``any``; a tool name selects that tool."""
    if not choice:
        return None
    if choice == REQUIRED:
        return {"type": "any"}
    if choice in (AUTO, NONE):
        return {"type": choice}
    return {"type": "tool", "name": choice}


def gemini_tool_config(choice: str | None) -> dict | None:
    if not choice:
        return None
    modes = {AUTO: "AUTO", REQUIRED: "ANY", NONE: "NONE"}
    if choice in modes:
        return {"functionCallingConfig": {"mode": modes[choice]}}
    return {
        "functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [choice]},
    }
