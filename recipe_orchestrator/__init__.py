"""Recipe orchestrator - Load, plan and execute declarative code-generation recipes."""

import logging
from pathlib import Path
from typing import Any

from .engine import EngineConfig
from .engine import RecipeEngine
from .engine import RecipeExecutionOptions
from .engine import load_engine_config
from .errors import CircularDependencyError
from .errors import ExecutionNotFoundError
from .errors import ParseError
from .errors import RecipeDependencyError
from .errors import RecipeError
from .errors import RecursionLimitError
from .errors import SourceError
from .errors import StepExecutionError
from .errors import ToolNotFoundError
from .errors import ToolValidationError
from .errors import ValidationError
from .events import EventBus
from .events import EventType
from .events import ExecutionEvent
from .group import GroupExecutionResult
from .group import GroupExecutor
from .group import RecipeGroup
from .models import RecipeConfig
from .models import Step
from .models import VariableSpec
from .results import ExecutionStatus
from .results import RecipeExecutionResult
from .results import StepResult
from .results import StepStatus
from .sources import RecipeSource
from .tools import Tool
from .tools import ToolResult
from .validator import ValidationResult
from .validator import validate_recipe

logger = logging.getLogger(__name__)


def create_engine(config: EngineConfig | dict[str, Any] | str | Path | None = None, **kwargs: Any) -> RecipeEngine:
    """
    Create a recipe engine.

    Args:
        config: EngineConfig, a settings mapping, or a path to a YAML settings file
        **kwargs: Passed to RecipeEngine (registry, fetcher, prompter, events)

    Raises:
        ValidationError: If the configuration is invalid
    """
    if isinstance(config, (str, Path)):
        config = load_engine_config(Path(config))
    elif config is None or isinstance(config, dict):
        config = EngineConfig.from_dict(config)

    engine = RecipeEngine(config, **kwargs)
    logger.info(f"Created recipe engine (working_dir={config.working_dir})")
    return engine


__all__ = [
    "CircularDependencyError",
    "EngineConfig",
    "EventBus",
    "EventType",
    "ExecutionEvent",
    "ExecutionNotFoundError",
    "ExecutionStatus",
    "GroupExecutionResult",
    "GroupExecutor",
    "ParseError",
    "RecipeConfig",
    "RecipeDependencyError",
    "RecipeEngine",
    "RecipeError",
    "RecipeExecutionOptions",
    "RecipeExecutionResult",
    "RecipeGroup",
    "RecipeSource",
    "RecursionLimitError",
    "SourceError",
    "Step",
    "StepExecutionError",
    "StepResult",
    "StepStatus",
    "Tool",
    "ToolNotFoundError",
    "ToolResult",
    "ToolValidationError",
    "ValidationError",
    "ValidationResult",
    "VariableSpec",
    "create_engine",
    "load_engine_config",
    "validate_recipe",
]
