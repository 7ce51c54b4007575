from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from .providers.base import ToolSpec


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> Dict[str, Any]: ...

    async def execute(self, tool_input: Dict[str, Any]) -> Any: ...


class ToolRegistry:
    """Tools the coordinator may run on behalf of a model.

    Adapters only report calls; execution always happens here, driven by the
    stream coordinator.
    """

    def __init__(self, tools: Optional[Iterable[Tool]] = None) -> None:
        self._tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return sorted(self._tools)

    def specs(self) -> List[ToolSpec]:
        return [
            ToolSpec(name=t.name, description=t.description, parameters=dict(t.input_schema))
            for t in self._tools.values()
        ]

    def __len__(self) -> int:
        return len(self._tools)
