"""Per-step execution context handed to tools."""

from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any

from .models import RecipeConfig
from .results import StepResult

if TYPE_CHECKING:
    from .engine import RecipeEngine
    from .executor import StepExecutor
    from .variables import Prompter


@dataclass
class StepContext:
    """What a tool sees while running a step.

    ``variables`` is a private copy per step; tools export values through
    ``ToolResult.variables`` rather than mutating it.
    """

    execution_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    recipe: RecipeConfig | None = None
    working_dir: Path = field(default_factory=Path.cwd)
    dry_run: bool = False
    force: bool = False
    step_results: dict[str, StepResult] = field(default_factory=dict)  # Earlier phases only
    recipe_stack: list[str] = field(default_factory=list)  # Names of recipes being executed, outermost first
    executor: "StepExecutor | None" = None
    engine: "RecipeEngine | None" = None
    prompter: "Prompter | None" = None

    @property
    def depth(self) -> int:
        return max(len(self.recipe_stack) - 1, 0)

    @property
    def recipe_dir(self) -> Path:
        """Directory of the running recipe's file, else the working directory."""
        if self.recipe is not None and self.recipe.source_path:
            return Path(self.recipe.source_path).parent
        return self.working_dir

    def for_step(self, variables: dict[str, Any]) -> "StepContext":
        """Copy with its own variable scope."""
        return replace(self, variables=dict(variables))
