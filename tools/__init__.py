"""Agent tools: re-exports from tools.registry.

Importing :mod:`tools.drill_tools` populates the registry.
"""

from __future__ import annotations

from tools.registry import (  # noqa: F401
    TOOLSET_DRILL,
    get_tool_names,
    get_tools,
    register_tool,
)
