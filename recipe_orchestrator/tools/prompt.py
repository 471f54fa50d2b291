"""Prompt step tool: asks for one variable and exports it."""

from ..context import StepContext
from ..models import PromptStep
from ..models import Step
from .base import Tool
from .base import ToolResult

_PROMPT_TYPES = {"input": "string", "confirm": "boolean", "select": "enum", "multiselect": "enum"}


class PromptTool(Tool):
    kind = "prompt"

    async def execute(self, step: Step, context: StepContext) -> ToolResult:
        assert isinstance(step, PromptStep), "Prompt tool requires a prompt step"

        # Already known values are not asked again
        value = context.variables.get(step.variable)
        source = "existing"

        if value is None and context.prompter is not None and not context.dry_run:
            value = await context.prompter.prompt(
                step.variable,
                step.message or step.description,
                _PROMPT_TYPES[step.prompt_type],
                step.default,
                step.choices,
                None,
            )
            source = "prompt"

        if value is None:
            value = step.default
            source = "default"

        if value is None:
            raise ValueError(f"no value for '{step.variable}' and prompting is unavailable")

        return ToolResult(output={"variable": step.variable, "source": source}, variables={step.variable: value})
