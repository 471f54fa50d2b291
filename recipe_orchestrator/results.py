"""Execution plans and result types."""

import datetime
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any


class StepStatus(Enum):
    """Lifecycle of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)


class ExecutionStatus(Enum):
    """Lifecycle of a whole recipe execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StepError:
    message: str
    code: str = "EXECUTION_ERROR"
    cause: BaseException | None = None


@dataclass
class StepResult:
    """Outcome of one step. Finalized once it reaches a terminal status."""

    step_name: str
    tool_kind: str
    status: StepStatus = StepStatus.PENDING
    phase: int = 0
    started_at: datetime.datetime | None = None
    completed_at: datetime.datetime | None = None
    duration: float = 0.0  # Seconds
    retry_count: int = 0
    dependencies_satisfied: bool = True
    condition_result: bool | None = None  # None when the step has no condition
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    output: Any = None
    variables: dict[str, Any] = field(default_factory=dict)  # Exported to later phases
    error: StepError | None = None

    def start(self) -> None:
        self.status = StepStatus.RUNNING
        self.started_at = datetime.datetime.now()

    def finish(self, status: StepStatus, error: StepError | None = None) -> None:
        self.status = status
        self.error = error
        self.completed_at = datetime.datetime.now()
        if self.started_at is not None:
            self.duration = (self.completed_at - self.started_at).total_seconds()


@dataclass
class StepDependencyNode:
    """Derived graph node for one step."""

    step_name: str
    dependencies: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)
    priority: int = 0
    parallelizable: bool = True


@dataclass
class ExecutionPhase:
    steps: list[str]
    parallel: bool = False


@dataclass
class ExecutionPlan:
    """Ordered phases for one execution. Built fresh per run."""

    phases: list[ExecutionPhase] = field(default_factory=list)
    nodes: dict[str, StepDependencyNode] = field(default_factory=dict)

    @property
    def step_count(self) -> int:
        return sum(len(phase.steps) for phase in self.phases)

    def phase_of(self, step_name: str) -> int:
        for index, phase in enumerate(self.phases):
            if step_name in phase.steps:
                return index
        raise KeyError(step_name)


@dataclass
class RecipeExecutionResult:
    """Aggregated outcome of running one recipe."""

    execution_id: str
    recipe_name: str
    success: bool
    status: ExecutionStatus
    step_results: list[StepResult] = field(default_factory=list)
    duration: float = 0.0
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    provided_values: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def get_step_result(self, step_name: str) -> StepResult | None:
        for result in self.step_results:
            if result.step_name == step_name:
                return result
        return None
