"""``{{variable}}`` substitution in step parameters."""

import json
import re
from typing import Any

# Multi-level access: {{a.b.c}}, optional inner whitespace
VARIABLE_PATTERN = re.compile(r"\{\{\s*(\w+(?:\.\w+)*)\s*\}\}")


def _format(value: Any) -> str:
    # json.dumps for dict/list produces valid JSON, not Python repr
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def lookup(variables: dict[str, Any], reference: str) -> Any:
    """
    Resolve a dotted reference against ``variables``.

    Raises:
        ValueError: If any part of the path is undefined
    """
    parts = reference.split(".")
    if parts[0] not in variables:
        available = ", ".join(sorted(variables.keys()))
        raise ValueError(f"Undefined variable: {{{{{reference}}}}}. Available variables: {available}")

    value: Any = variables[parts[0]]
    for depth, part in enumerate(parts[1:], start=1):
        parent = ".".join(parts[:depth])
        if isinstance(value, dict):
            if part not in value:
                raise ValueError(
                    f"Undefined variable: {{{{{reference}}}}}. Key '{part}' not found. "
                    f"Available keys at '{parent}': {', '.join(sorted(str(k) for k in value.keys()))}"
                )
            value = value[part]
        else:
            raise ValueError(f"Cannot access '{part}' on {{{{{parent}}}}} - it's a {type(value).__name__}, not a dict")
    return value


def substitute_variables(template: str, variables: dict[str, Any]) -> str:
    """
    Replace {{variable}} references with values.

    Raises:
        ValueError: If a referenced variable is undefined
    """
    return VARIABLE_PATTERN.sub(lambda match: _format(lookup(variables, match.group(1))), template)


def substitute_recursive(value: Any, variables: dict[str, Any]) -> Any:
    """Substitute inside strings, dict values and list items; other values pass through."""
    if isinstance(value, str):
        # A string that is exactly one reference keeps the referenced value's type
        match = VARIABLE_PATTERN.fullmatch(value.strip())
        if match:
            return lookup(variables, match.group(1))
        return substitute_variables(value, variables)
    if isinstance(value, dict):
        return {k: substitute_recursive(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_recursive(item, variables) for item in value]
    return value
