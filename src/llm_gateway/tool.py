from __future__ import annotations

import inspect
import re
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

ProgressCallback = Callable[[str], None]

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def normalize_tool_name(name: str | None) -> str:
    """Make a tool name acceptable to every provider's naming rules."""
    normalized = _INVALID_NAME_CHARS.sub("_", name or "")
    if normalized and not re.match(r"[A-Za-z_]", normalized):
        return f"tool_{normalized}"
    return normalized or "unnamed_tool"


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    async def execute(self, tool_input: dict[str, Any], progress: ProgressCallback) -> Any: ...


class FunctionTool:
    """Wraps an async callable. The callable may accept a ``progress`` keyword.

    An async generator function is handed back unstarted, so passthrough
    tools can stream its pieces.
    """

    def __init__(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        *,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        self._name = name
        self._func = func
        self._description = description or (inspect.getdoc(func) or "")
        self._input_schema = input_schema or {"type": "object", "properties": {}}
        self._wants_progress = "progress" in inspect.signature(func).parameters

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._input_schema

    async def execute(self, tool_input: dict[str, Any], progress: ProgressCallback) -> Any:
        kwargs = dict(tool_input, progress=progress) if self._wants_progress else tool_input
        if inspect.isasyncgenfunction(self._func):
            return self._func(**kwargs)
        return await self._func(**kwargs)
