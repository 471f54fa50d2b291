"""Recipe step tool: runs another recipe as a sub-recipe."""

import logging

from ..context import StepContext
from ..errors import ExecutionCancelledError
from ..interpolation import substitute_recursive
from ..interpolation import substitute_variables
from ..models import RecipeStep
from ..models import Step
from ..results import ExecutionStatus
from .base import Tool
from .base import ToolResult

logger = logging.getLogger(__name__)


class RecipeTool(Tool):
    kind = "recipe"

    async def execute(self, step: Step, context: StepContext) -> ToolResult:
        """
        Load and run the sub-recipe through the same engine.

        Relative paths resolve against the parent recipe's directory. The child
        starts from the parent's variables when ``inherit_variables`` is set,
        plus ``variable_overrides``. Child values come back through the child's
        ``provides`` and ``variable_mapping`` (parent name <- child name).

        Raises:
            ValueError: If no engine is available or the sub-recipe fails
            ExecutionCancelledError: If the sub-recipe was cancelled
        """
        assert isinstance(step, RecipeStep), "Recipe tool requires a recipe step"
        if context.engine is None:
            raise ValueError(f"Step '{step.name}': recipe steps need an engine in the execution context")

        recipe_ref = substitute_variables(step.recipe, context.variables)

        child_vars = dict(context.variables) if step.inherit_variables else {}
        child_vars.update(substitute_recursive(step.variable_overrides, context.variables))

        result = await context.engine.execute_sub_recipe(recipe_ref, child_vars, context, version=step.version)

        if result.status == ExecutionStatus.CANCELLED:
            raise ExecutionCancelledError(
                result.execution_id, f"Sub-recipe '{result.recipe_name or recipe_ref}' was cancelled"
            )
        if not result.success:
            detail = "; ".join(result.errors) or result.status.value
            raise ValueError(f"Sub-recipe '{result.recipe_name or recipe_ref}' failed: {detail}")

        exported = dict(result.provided_values)
        for parent_name, child_name in step.variable_mapping.items():
            if child_name in result.variables:
                exported[parent_name] = result.variables[child_name]
            else:
                logger.warning(f"Step '{step.name}': sub-recipe did not set '{child_name}' (mapped to '{parent_name}')")

        return ToolResult(
            files_created=result.files_created,
            files_modified=result.files_modified,
            files_deleted=result.files_deleted,
            output={
                "recipe": result.recipe_name,
                "execution_id": result.execution_id,
                "steps": result.metadata.get("total_steps", len(result.step_results)),
            },
            variables=exported,
        )
