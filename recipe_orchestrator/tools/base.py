"""Tool contract consumed by the step executor."""

from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from ..context import StepContext
from ..models import Step


@dataclass
class ToolValidationResult:
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ToolResult:
    """What a tool produced for one step."""

    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    output: Any = None
    variables: dict[str, Any] = field(default_factory=dict)  # Exported to later phases


class Tool(ABC):
    """Executor for one step kind.

    Instances are pooled by the ToolRegistry and never used by two steps at
    once. ``initialize`` runs once before first use and ``cleanup`` once when
    the instance leaves the pool (or its execution is cancelled).
    """

    kind: str = ""

    def __init__(self, name: str = "default"):
        self.name = name
        self.is_initialized = False
        self.is_cleaned_up = False

    async def initialize(self) -> None:
        self.is_initialized = True

    async def validate(self, step: Step, context: StepContext) -> ToolValidationResult:
        errors = step.validate()
        if step.tool != self.kind:
            errors.append(f"Step '{step.name}': {self.kind} tool cannot run '{step.tool}' steps")
        return ToolValidationResult(is_valid=not errors, errors=errors)

    @abstractmethod
    async def execute(self, step: Step, context: StepContext) -> ToolResult:
        """Run the step. Raise to signal failure."""

    async def cleanup(self) -> None:
        self.is_cleaned_up = True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind!r}, name={self.name!r})"
