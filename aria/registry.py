"""Tool registry: names, JSON schemas and argument validation."""

from dataclasses import dataclass, field
from typing import Callable

_JSON_TYPES = {
    "string": str,
    "integer": int,
    "boolean": bool,
    "array": list,
}


class UnknownToolError(KeyError):
    """Raised by lookup() for a name that is not registered."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"unknown tool: {self.name!r}"


class SchemaError(ValueError):
    """A tool payload that does not match the tool's declared parameters."""

    def __init__(self, field: str | None, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}" if field else reason)


@dataclass(frozen=True)
class Param:
    name: str
    type: str
    description: str
    required: bool = True
    path_like: bool = False
    items: str | None = None

    def schema(self) -> dict:
        prop: dict = {"type": self.type, "description": self.description}
        if self.items:
            prop["items"] = {"type": self.items}
        return prop


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    params: tuple[Param, ...]
    executor: Callable = field(compare=False, repr=False)

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {p.name: p.schema() for p in self.params},
                    "required": [p.name for p in self.params if p.required],
                },
            },
        }


def _type_matches(value, type_name: str) -> bool:
    expected = _JSON_TYPES[type_name]
    # bool is an int subclass; JSON keeps them apart.
    if type_name == "integer" and isinstance(value, bool):
        return False
    return isinstance(value, expected)


class ToolRegistry:
    """Closed set of tools the model may call.

    Populated once at startup, then frozen; lookups and validation never
    mutate it, so one registry can be shared by concurrent sessions.
    """

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}
        self._frozen = False

    def register(self, spec: ToolSpec) -> None:
        if self._frozen:
            raise RuntimeError("registry is frozen")
        if spec.name in self._tools:
            raise ValueError(f"tool {spec.name!r} is already registered")
        for p in spec.params:
            if p.type not in _JSON_TYPES:
                raise ValueError(f"{spec.name}.{p.name}: unsupported type {p.type!r}")
        self._tools[spec.name] = spec

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def lookup(self, name: str) -> ToolSpec:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        return [spec.schema() for spec in self._tools.values()]

    def validate(self, name: str, payload) -> dict:
        """Check payload against the tool's parameters and return it.

        Raises UnknownToolError or SchemaError. Only the shape is checked;
        whether a path exists is the executor's business.
        """
        spec = self.lookup(name)
        if not isinstance(payload, dict):
            raise SchemaError(None, "arguments must be a JSON object")

        declared = {p.name: p for p in spec.params}
        unknown = sorted(set(payload) - set(declared))
        if unknown:
            raise SchemaError(unknown[0], "unexpected field")

        for p in spec.params:
            if p.name not in payload:
                if p.required:
                    raise SchemaError(p.name, "missing required field")
                continue
            value = payload[p.name]
            if not _type_matches(value, p.type):
                raise SchemaError(
                    p.name, f"expected {p.type}, got {type(value).__name__}"
                )
            if p.items:
                for i, item in enumerate(value):
                    if not _type_matches(item, p.items):
                        raise SchemaError(
                            f"{p.name}[{i}]",
                            f"expected {p.items}, got {type(item).__name__}",
                        )
            if p.path_like and not value.strip():
                raise SchemaError(p.name, "path must not be empty")
            if p.path_like and "\x00" in value:
                raise SchemaError(p.name, "path must not contain NUL bytes")
        return payload


def build_registry() -> ToolRegistry:
    """Return a frozen registry holding the built-in tools."""
    from .tools import BUILTIN_TOOLS

    registry = ToolRegistry()
    for spec in BUILTIN_TOOLS:
        registry.register(spec)
    return registry.freeze()
