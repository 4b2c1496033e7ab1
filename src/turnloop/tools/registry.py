"""Tool definitions and the name-keyed registry the model can call into."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from turnloop.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)

_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

ParametersInput = type[BaseModel] | dict[str, Any]


@dataclass(frozen=True)
class ToolDefinition:
    """A callable tool exposed to the model.

    ``parameters`` is a JSON Schema dict or a Pydantic model class. With a
    model class, arguments are validated and ``execute`` receives the model
    instance instead of the raw dict.
    """

    name: str
    description: str
    execute: Callable[[Any], Any]
    parameters: ParametersInput | None = None
    #: Optional hook that turns the raw result into tool-result text.
    post_call: Callable[[Any], Awaitable[str] | str] | None = None

    def __post_init__(self) -> None:
        if not _TOOL_NAME_RE.match(self.name or ""):
            raise ConfigurationError(
                f"Invalid tool name: {self.name!r}",
                hint="Tool names may use letters, digits, '_' and '-' (max 64).",
            )
        if not callable(self.execute):
            raise ConfigurationError(f"Tool {self.name!r} execute is not callable")
        if self.parameters is not None and not (
            isinstance(self.parameters, dict)
            or (
                isinstance(self.parameters, type)
                and issubclass(self.parameters, BaseModel)
            )
        ):
            raise ConfigurationError(
                f"Tool {self.name!r} parameters must be a JSON schema dict "
                "or a Pydantic model class",
            )

    @property
    def parameters_schema(self) -> dict[str, Any]:
        if self.parameters is None:
            return {"type": "object", "properties": {}}
        if isinstance(self.parameters, dict):
            return self.parameters
        return self.parameters.model_json_schema()

    def to_schema(self) -> dict[str, Any]:
        """Provider-neutral tool schema (name, description, parameters)."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema,
        }

    def coerce_arguments(self, arguments: dict[str, Any]) -> Any:
        """Validate *arguments* against a Pydantic model when one is set."""
        if isinstance(self.parameters, type) and issubclass(self.parameters, BaseModel):
            return self.parameters.model_validate(arguments)
        return arguments


class ToolRegistry:
    """Registry of tools, keyed by unique name."""

    def __init__(self, tools: Iterable[ToolDefinition] = ()) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.add(tool)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def add(self, tool: ToolDefinition) -> None:
        """Register *tool*, replacing any tool with the same name."""
        if tool.name in self._tools:
            logger.debug("Replacing tool %r", tool.name)
        self._tools[tool.name] = tool

    def remove(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def list(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def schemas(self) -> list[dict[str, Any]]:
        return [tool.to_schema() for tool in self._tools.values()]
