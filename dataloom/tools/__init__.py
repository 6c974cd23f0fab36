from .builtin import SKIP_ITEM_TOOL, SkipItemTool
from .executor import (
    ResolvedTool,
    ToolExecutor,
    ToolSet,
    build_parameters,
    normalize_result,
)

__all__ = [
    "SKIP_ITEM_TOOL",
    "SkipItemTool",
    "ResolvedTool",
    "ToolExecutor",
    "ToolSet",
    "build_parameters",
    "normalize_result",
]
