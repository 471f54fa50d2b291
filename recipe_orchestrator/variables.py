"""Variable resolution: caller values, schema defaults and interactive prompts."""

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any
from typing import Protocol

from rich.console import Console
from rich.prompt import Confirm
from rich.prompt import Prompt

from .errors import ValidationError
from .models import VariableSpec

logger = logging.getLogger(__name__)


class Prompter(Protocol):
    """Asks the user for a single variable value."""

    async def prompt(
        self,
        name: str,
        description: str | None,
        type: str,
        default: Any,
        choices: list[Any] | None,
        validator: Callable[[Any], str | None] | None,
    ) -> Any: ...


def validate_variable_value(name: str, value: Any, spec: VariableSpec) -> None:
    """Raise ValidationError naming the variable and value if ``value`` violates ``spec``."""
    if spec.required and value == "":
        raise ValidationError([f"Variable '{name}' is required, got empty value"])
    problem = spec.check_value(name, value)
    if problem:
        raise ValidationError([problem])


class VariableResolver:
    """Merges caller values, defaults and prompted answers into the execution scope."""

    def __init__(self, prompter: Prompter | None = None):
        self.prompter = prompter

    async def resolve(
        self,
        schema: dict[str, VariableSpec],
        provided: dict[str, Any] | None = None,
        skip_prompts: bool = False,
    ) -> dict[str, Any]:
        """
        Resolve every schema variable.

        Per variable: the provided value, else the default, else a prompted
        answer (required variables only, unless prompts are skipped). Invalid
        values fail immediately; missing required variables are reported
        together. Provided values without a schema entry pass through.

        Raises:
            ValidationError: On an invalid value or any missing required variables
        """
        provided = dict(provided or {})
        resolved: dict[str, Any] = {}
        missing: list[str] = []

        for name, spec in schema.items():
            value = provided.get(name)
            if value is not None:
                validate_variable_value(name, value, spec)
                resolved[name] = value
                continue

            if spec.has_default:
                resolved[name] = spec.default
                continue

            if not spec.required:
                resolved[name] = None
                continue

            if skip_prompts or self.prompter is None:
                missing.append(name)
                continue

            answer = await self.prompter.prompt(
                name,
                spec.prompt or spec.description,
                spec.type,
                spec.default,
                spec.values,
                lambda candidate, _name=name, _spec=spec: _spec.check_value(_name, candidate),
            )
            if answer is None or answer == "":
                missing.append(name)
                continue
            validate_variable_value(name, answer, spec)
            resolved[name] = answer

        if missing:
            raise ValidationError(
                [f"Missing required variable: {name}" for name in missing],
                f"Missing required variables: {', '.join(missing)}",
            )

        for name, value in provided.items():
            if name not in schema:
                resolved[name] = value

        logger.debug(f"Resolved {len(resolved)} variables ({len(provided)} provided)")
        return resolved


class ConsolePrompter:
    """Prompter backed by rich's terminal prompts."""

    def __init__(self, console: Console | None = None, max_attempts: int = 3):
        self.console = console or Console()
        self.max_attempts = max_attempts

    async def prompt(
        self,
        name: str,
        description: str | None,
        type: str,
        default: Any,
        choices: list[Any] | None,
        validator: Callable[[Any], str | None] | None,
    ) -> Any:
        return await asyncio.to_thread(self._ask, name, description, type, default, choices, validator)

    def _ask(
        self,
        name: str,
        description: str | None,
        type: str,
        default: Any,
        choices: list[Any] | None,
        validator: Callable[[Any], str | None] | None,
    ) -> Any:
        label = f"[bold]{name}[/bold]" + (f" ({description})" if description else "")
        for _ in range(self.max_attempts):
            value = self._ask_once(label, type, default, choices)
            problem = validator(value) if validator else None
            if problem is None:
                return value
            self.console.print(f"[red]{problem}[/red]")
        return None

    def _ask_once(self, label: str, type: str, default: Any, choices: list[Any] | None) -> Any:
        if type == "boolean":
            return Confirm.ask(label, default=bool(default), console=self.console)

        if type == "enum" and choices:
            options = [str(c) for c in choices]
            answer = Prompt.ask(
                label,
                choices=options,
                default=str(default) if default is not None else None,
                console=self.console,
            )
            return choices[options.index(answer)]

        answer = Prompt.ask(label, default=str(default) if default is not None else None, console=self.console)
        if answer is None:
            return None
        if type == "number":
            try:
                return int(answer) if answer.lstrip("-").isdigit() else float(answer)
            except ValueError:
                return answer
        if type == "array":
            return [item.strip() for item in answer.split(",") if item.strip()]
        if type == "object":
            try:
                return json.loads(answer)
            except json.JSONDecodeError:
                return answer
        return answer
