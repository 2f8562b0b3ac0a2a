"""Registry of externally-owned capabilities the provider may dispatch.

Capabilities (provisioning, compliance scanning, cost analysis, ...) are implemented
elsewhere. The orchestration core only enumerates them for the provider and forwards
the provider's dispatch requests to the registered handler.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence

LOGGER = logging.getLogger(__name__)

__all__ = [
    "CapabilityParameter",
    "CapabilitySpec",
    "CapabilityRegistry",
    "CapabilityHandler",
    "DuplicateCapabilityError",
    "CapabilityNotFoundError",
]

CapabilityHandler = Callable[..., "Awaitable[Any] | Any"]


# -----------------------------------------------------------------------------
# Schema Types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CapabilityParameter:
    """A single declared parameter of a capability."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    enum: Sequence[Any] | None = None

    def to_json_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type, "description": self.description}
        if self.enum:
            schema["enum"] = list(self.enum)
        return schema


@dataclass(slots=True)
class CapabilitySpec:
    """Name, description, parameters and handler of one capability.

    Attributes:
        name: Identifier the provider uses when dispatching.
        description: Text shown to the model to decide when to call it.
        parameters: Declared parameters.
        handler: Sync or async callable receiving the parsed arguments as keywords.
        enabled: Disabled capabilities are hidden from the provider.
    """

    name: str
    description: str
    handler: CapabilityHandler
    parameters: Sequence[CapabilityParameter] = field(default_factory=tuple)
    enabled: bool = True

    def to_json_schema(self) -> dict[str, Any]:
        properties = {param.name: param.to_json_schema() for param in self.parameters}
        required = [param.name for param in self.parameters if param.required]
        schema: dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            schema["required"] = required
        return schema

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.to_json_schema(),
            },
        }


class DuplicateCapabilityError(ValueError):
    pass


class CapabilityNotFoundError(KeyError):
    pass


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


class CapabilityRegistry:
    """Enumerable set of named capabilities with declared parameters."""

    def __init__(self, specs: Sequence[CapabilitySpec] | None = None) -> None:
        self._specs: dict[str, CapabilitySpec] = {}
        for spec in specs or ():
            self.register(spec)

    def register(self, spec: CapabilitySpec, *, replace: bool = False) -> None:
        name = (spec.name or "").strip()
        if not name:
            raise ValueError("Capability name is required")
        if name in self._specs and not replace:
            raise DuplicateCapabilityError(f"Capability '{name}' is already registered")
        self._specs[name] = spec
        LOGGER.debug("Registered capability: %s", name)

    def unregister(self, name: str) -> bool:
        removed = self._specs.pop(name, None)
        if removed is not None:
            LOGGER.debug("Unregistered capability: %s", name)
        return removed is not None

    def get(self, name: str) -> CapabilitySpec | None:
        return self._specs.get(name)

    def names(self, *, enabled_only: bool = True) -> list[str]:
        return [name for name, spec in self._specs.items() if spec.enabled or not enabled_only]

    def to_openai_tools(self) -> list[dict[str, Any]]:
        return [spec.to_openai_tool() for spec in self._specs.values() if spec.enabled]

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    async def invoke(self, name: str, arguments: str | Mapping[str, Any] | None = None) -> str:
        """Run a capability and return its result as text for the provider.

        Handler failures are reported back as an ``Error: ...`` string so the model can
        recover within the same turn. Unknown names raise :class:`CapabilityNotFoundError`.
        """

        spec = self._specs.get(name)
        if spec is None or not spec.enabled:
            raise CapabilityNotFoundError(name)
        try:
            kwargs = _parse_arguments(arguments)
        except ValueError as exc:
            LOGGER.warning("Capability %s received malformed arguments: %s", name, exc)
            return f"Error: invalid arguments for {name}: {exc}"
        try:
            result = spec.handler(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            LOGGER.warning("Capability %s failed: %s", name, exc, exc_info=True)
            return f"Error: {name} failed: {exc}"
        return _stringify(result)


def _parse_arguments(arguments: str | Mapping[str, Any] | None) -> dict[str, Any]:
    if arguments is None:
        return {}
    if isinstance(arguments, Mapping):
        return dict(arguments)
    text = arguments.strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(str(exc)) from exc
    if not isinstance(parsed, dict):
        raise ValueError("arguments must be a JSON object")
    return parsed


def _stringify(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)
