"""Exception taxonomy for recipe loading, planning and execution."""

import asyncio


class RecipeError(Exception):
    """Base class for all recipe orchestration errors."""

    pass


class ValidationError(RecipeError):
    """Raised when a recipe, variable set or configuration fails validation."""

    def __init__(self, errors: list[str] | str, message: str | None = None):
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        if message is None:
            message = "Validation failed:\n" + "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(message)


class ParseError(RecipeError):
    """Raised when recipe content cannot be parsed into a recipe document."""

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        if source:
            message = f"{message} (source: {source})"
        super().__init__(message)


class SourceError(RecipeError):
    """Raised for untrusted, disallowed or missing recipe sources."""

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        super().__init__(message)


class CircularDependencyError(RecipeError):
    """Raised when a dependency graph contains a cycle.

    The cycle path starts and ends with the same node, e.g. ``["A", "B", "A"]``.
    """

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class StepExecutionError(RecipeError):
    """Raised when a step exhausts its retry budget."""

    def __init__(self, step_name: str, message: str, tool_kind: str | None = None, cause: BaseException | None = None):
        self.step_name = step_name
        self.tool_kind = tool_kind
        self.cause = cause
        super().__init__(f"Step '{step_name}' failed: {message}")


class RecipeDependencyError(RecipeError):
    """Raised when a required recipe dependency fails to load."""

    def __init__(self, dependency: str, message: str, version: str | None = None):
        self.dependency = dependency
        self.version = version
        label = f"{dependency}@{version}" if version else dependency
        super().__init__(f"Required dependency '{label}' failed to load: {message}")


class ToolNotFoundError(RecipeError):
    """Raised when no tool is registered for a (kind, name) pair."""

    def __init__(self, tool_kind: str, tool_name: str = "default"):
        self.tool_kind = tool_kind
        self.tool_name = tool_name
        super().__init__(f"No tool registered for kind '{tool_kind}' (name '{tool_name}')")


class ToolValidationError(RecipeError):
    """Raised when a tool rejects a step before execution."""

    def __init__(self, step_name: str, errors: list[str]):
        self.step_name = step_name
        self.errors = list(errors)
        super().__init__(f"Step '{step_name}' failed tool validation: {'; '.join(self.errors)}")


class RecursionLimitError(RecipeError):
    """Raised when sub-recipe nesting is too deep or re-enters a running recipe."""

    def __init__(self, message: str, recipe_stack: list[str]):
        self.recipe_stack = list(recipe_stack)
        super().__init__(f"{message}. Stack: {' -> '.join(self.recipe_stack)}")


class ExecutionCancelledError(RecipeError):
    """Raised when work a step was waiting on was cancelled."""

    def __init__(self, execution_id: str, message: str = "execution cancelled"):
        self.execution_id = execution_id
        super().__init__(message)


class ExecutionNotFoundError(RecipeError):
    """Raised when an execution id is not known to the engine."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


def error_code(error: BaseException) -> str:
    """Map an exception to a short machine-readable code for step results."""
    codes: dict[type, str] = {
        ToolNotFoundError: "TOOL_NOT_FOUND",
        ToolValidationError: "TOOL_VALIDATION_FAILED",
        StepExecutionError: "STEP_EXECUTION_FAILED",
        CircularDependencyError: "CIRCULAR_DEPENDENCY",
        ValidationError: "VALIDATION_ERROR",
        SourceError: "SOURCE_ERROR",
        ParseError: "PARSE_ERROR",
        RecipeDependencyError: "DEPENDENCY_ERROR",
        RecursionLimitError: "RECURSION_LIMIT",
        ExecutionCancelledError: "CANCELLED",
    }
    for error_type, code in codes.items():
        if isinstance(error, error_type):
            return code
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return "TIMEOUT"
    return "EXECUTION_ERROR"


def is_retryable(error: BaseException) -> bool:
    """Deterministic failures (unknown tool, invalid step or recipe, recursion) are not retried."""
    return not isinstance(
        error,
        (
            ToolNotFoundError,
            ToolValidationError,
            RecursionLimitError,
            ValidationError,
            CircularDependencyError,
            ParseError,
            SourceError,
            RecipeDependencyError,
            ExecutionCancelledError,
        ),
    )
