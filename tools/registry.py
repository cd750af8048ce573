"""Single-source tool registry with toolset classification.

Tools register here via ``@register_tool(toolset="drill")`` and agents fetch
them as a PydanticAI ``FunctionToolset`` with ``get_tools(["drill"])``.

- Tools are plain async functions taking ``RunContext[...]`` first.
- Each tool belongs to exactly one toolset.
- Every call is timed and counted in the metrics collector.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Sequence

from pydantic_ai import Tool
from pydantic_ai.toolsets import FunctionToolset

from services.metrics import get_metrics_collector

logger = logging.getLogger(__name__)

# ── Toolset names ───────────────────────────────────────────

TOOLSET_DRILL = "drill"

ALL_TOOLSETS = [TOOLSET_DRILL]


# ── Registry internals ──────────────────────────────────────


@dataclass
class RegisteredTool:
    """Metadata for a registered tool."""

    name: str
    func: Callable[..., Any]
    toolset: str
    description: str = ""


_registry: dict[str, RegisteredTool] = {}


def register_tool(toolset: str, *, name: str | None = None):
    """Decorator to register a tool function with a toolset.

    Usage::

        @register_tool(toolset="drill")
        async def mark_phase_complete(ctx: RunContext[DrillDeps], phase_id: str) -> str:
            ...
    """
    if toolset not in ALL_TOOLSETS:
        raise ValueError(f"Unknown toolset: {toolset!r}. Must be one of {ALL_TOOLSETS}")

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        tool_name = name or func.__name__
        doc = (func.__doc__ or "").strip().split("\n")[0]
        wrapped = _wrap_with_metrics(func, tool_name)
        _registry[tool_name] = RegisteredTool(
            name=tool_name,
            func=wrapped,
            toolset=toolset,
            description=doc,
        )
        return wrapped

    return decorator


# ── Public API ──────────────────────────────────────────────


def get_tools(toolsets: Sequence[str]) -> FunctionToolset:
    """Return a FunctionToolset containing tools from the given toolsets."""
    selected = [
        Tool(rt.func, name=rt.name)
        for rt in _registry.values()
        if rt.toolset in toolsets
    ]
    return FunctionToolset(selected)


def get_tool_names(toolsets: Sequence[str] | None = None) -> list[str]:
    """Return tool names, optionally filtered by toolset."""
    if toolsets is None:
        return list(_registry.keys())
    return [rt.name for rt in _registry.values() if rt.toolset in toolsets]


def _wrap_with_metrics(func: Callable[..., Any], tool_name: str) -> Callable[..., Any]:
    if not inspect.iscoroutinefunction(func):
        return func

    @wraps(func)
    async def wrapped(*args: Any, **kwargs: Any) -> Any:
        start = time.monotonic()
        status = "ok"
        try:
            return await func(*args, **kwargs)
        except Exception:
            status = "error"
            logger.exception("tool %s raised an unhandled exception", tool_name)
            raise
        finally:
            get_metrics_collector().record_tool_call(tool_name=tool_name, status=status)
            logger.debug("tool %s finished in %.1fms", tool_name, (time.monotonic() - start) * 1000)

    return wrapped
