"""Structural and semantic validation of recipe documents."""

from dataclasses import dataclass
from dataclasses import field

from .errors import SourceError
from .expression_evaluator import ExpressionError
from .expression_evaluator import compile_condition
from .models import RecipeConfig
from .models import Step
from .sources import dependency_to_source


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def validate_recipe(recipe: RecipeConfig) -> ValidationResult:
    """
    Validate a recipe without executing or fetching anything.

    Cycles in ``depends_on`` are left to the planner, which reports the full
    cycle path.

    Args:
        recipe: Parsed recipe

    Returns:
        ValidationResult with all errors and warnings found
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not recipe.name:
        errors.append("Recipe missing required field: name")
    elif not recipe.name.replace("-", "").replace("_", "").replace("/", "").replace(".", "").isalnum():
        warnings.append(f"Recipe name '{recipe.name}' contains unusual characters")

    for var_name, spec in recipe.variables.items():
        if not var_name.replace("-", "_").isidentifier():
            errors.append(f"Variable name '{var_name}' must be an identifier")
        errors.extend(spec.validate(var_name))

    if not recipe.steps:
        errors.append("Recipe must have at least one step")

    errors.extend(_validate_steps(recipe.steps, warnings))

    for dependency in recipe.dependencies:
        dep_errors = dependency.validate()
        errors.extend(dep_errors)
        if dep_errors:
            continue
        try:
            dependency_to_source(dependency)
        except SourceError as e:
            errors.append(f"Dependency '{dependency.name}': {e}")

    provided = [p.name for p in recipe.provides]
    if any(not name for name in provided):
        errors.append("Provides entries require a name")
    duplicates = sorted({name for name in provided if name and provided.count(name) > 1})
    if duplicates:
        errors.append(f"Duplicate provides names: {', '.join(duplicates)}")

    settings = recipe.settings
    if settings.max_parallel_steps is not None and settings.max_parallel_steps < 1:
        errors.append("settings.maxParallelSteps must be >= 1")
    if settings.retries is not None and settings.retries < 0:
        errors.append("settings.retries must be non-negative")
    if settings.timeout is not None and settings.timeout <= 0:
        errors.append("settings.timeout must be positive")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def _validate_steps(steps: list[Step], warnings: list[str]) -> list[str]:
    errors = []

    for step in steps:
        errors.extend(step.validate())
        if step.when:
            try:
                compile_condition(step.when)
            except ExpressionError as e:
                warnings.append(f"Step '{step.name}': condition will evaluate to false: {e}")

    names = [step.name for step in steps]
    duplicates = sorted({name for name in names if name and names.count(name) > 1})
    if duplicates:
        errors.append(f"Duplicate step names: {', '.join(duplicates)}")

    known = set(names)
    for step in steps:
        for dep in step.depends_on if isinstance(step.depends_on, list) else []:
            if dep not in known:
                errors.append(f"Step '{step.name}': dependsOn references unknown step '{dep}'")

    return errors
