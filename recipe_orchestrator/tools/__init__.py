"""Tool contract, registry and built-in tools."""

from .base import Tool
from .base import ToolResult
from .base import ToolValidationResult
from .composite import ParallelTool
from .composite import SequenceTool
from .prompt import PromptTool
from .recipe import RecipeTool
from .registry import ToolRegistry
from .registry import ToolRegistryConfig
from .shell import ShellTool

BUILTIN_TOOLS: dict[str, type[Tool]] = {
    "shell": ShellTool,
    "recipe": RecipeTool,
    "prompt": PromptTool,
    "sequence": SequenceTool,
    "parallel": ParallelTool,
}


def register_builtin_tools(registry: ToolRegistry) -> None:
    for kind, tool_cls in BUILTIN_TOOLS.items():
        registry.register(kind, tool_cls)


__all__ = [
    "BUILTIN_TOOLS",
    "ParallelTool",
    "PromptTool",
    "RecipeTool",
    "SequenceTool",
    "ShellTool",
    "Tool",
    "ToolRegistry",
    "ToolRegistryConfig",
    "ToolResult",
    "ToolValidationResult",
    "register_builtin_tools",
]
