"""
Tool descriptors offered to the agent at session creation.

Tool providers hand over plain mappings in one of two shapes:

    {"type": "function", "name": ..., "description": ..., "parameters": {...}}
    {"tool": {<same as above>}}

Both normalise to ToolDescriptor. Anything else is skipped.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from logging_setup import get_logger, Component

from .models import ToolCall, ToolDescriptor, ToolResult


logger = get_logger(Component.TOOLS)


class ToolExecutor(Protocol):
    """An in-process tool: describes itself and runs one invocation."""

    name: str

    def descriptor(self) -> Dict[str, Any]: ...

    async def execute(self, tool_call: ToolCall, call_id: str) -> ToolResult: ...


def normalize_tool(item: Any) -> Optional[ToolDescriptor]:
    """Normalise one provider item, or None if it matches neither shape."""
    if not isinstance(item, Mapping):
        return None

    if item.get("type") == "function" and item.get("name"):
        candidate: Mapping[str, Any] = item
    elif isinstance(item.get("tool"), Mapping):
        candidate = item["tool"]
        if candidate.get("type", "function") != "function" or not candidate.get("name"):
            return None
    else:
        return None

    name = candidate.get("name")
    if not isinstance(name, str):
        return None
    description = candidate.get("description")
    parameters = candidate.get("parameters")
    return ToolDescriptor(
        name=name,
        description=description if isinstance(description, str) else "",
        parameters=dict(parameters) if isinstance(parameters, Mapping) else {},
    )


class ToolRegistry:
    """Collects tool descriptors and keeps executors for tools run in-process."""

    def __init__(self, executors: Iterable[ToolExecutor] = ()):
        self._executors: Dict[str, ToolExecutor] = {}
        for executor in executors:
            self.register(executor)

    def register(self, executor: ToolExecutor) -> None:
        if executor.name in self._executors:
            logger.warning("Replacing tool executor", tool=executor.name)
        self._executors[executor.name] = executor

    def get(self, name: str) -> Optional[ToolExecutor]:
        return self._executors.get(name)

    def names(self) -> List[str]:
        return list(self._executors)

    def collect(self, providers: Iterable[Iterable[Any]] = ()) -> List[ToolDescriptor]:
        """
        Ordered descriptors: registered executors first, then each
        provider's items in order. No providers yields an empty list.
        """
        tools: List[ToolDescriptor] = []
        for executor in self._executors.values():
            descriptor = normalize_tool(executor.descriptor())
            if descriptor is not None:
                tools.append(descriptor)

        for provider in providers:
            if isinstance(provider, Mapping):
                provider = [provider]
            for item in provider:
                descriptor = normalize_tool(item)
                if descriptor is None:
                    logger.debug("Skipping item that is not a tool descriptor",
                                 item_type=type(item).__name__)
                    continue
                tools.append(descriptor)
        return tools
