"""Recipe data models and YAML parsing."""

import re
from dataclasses import dataclass
from dataclasses import field
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ParseError

VARIABLE_TYPES = ("string", "number", "boolean", "enum", "array", "object", "file", "directory")

TOOL_KINDS = ("template", "action", "codemod", "recipe", "shell", "prompt", "sequence", "parallel", "ai")

DEPENDENCY_TYPES = ("package", "github", "http", "local")

# Keys whose snake_case form is not the field name
KEY_ALIASES = {
    "id": "name",
    "condition": "when",
    "if": "when",
    "env": "environment",
}


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Map camelCase and aliased keys of a YAML mapping onto field names."""
    normalized: dict[str, Any] = {}
    for key, value in data.items():
        name = _snake_case(str(key))
        normalized[KEY_ALIASES.get(name, name)] = value
    return normalized


@dataclass(frozen=True)
class VariableSpec:
    """Schema entry for a single recipe variable."""

    type: str = "string"
    required: bool = False
    default: Any = None  # None means no default
    description: str | None = None
    pattern: str | None = None  # string only
    values: list[Any] | None = None  # enum choices
    multiple: bool = False  # enum accepts a list of choices
    min: float | None = None  # number only
    max: float | None = None  # number only
    prompt: str | None = None  # Message shown when asking interactively

    @property
    def has_default(self) -> bool:
        return self.default is not None

    @classmethod
    def from_dict(cls, data: Any) -> "VariableSpec":
        """Parse a schema entry; a bare string is shorthand for the type."""
        if data is None:
            return cls()
        if isinstance(data, str):
            return cls(type=data)
        if not isinstance(data, dict):
            raise ParseError(f"Variable definition must be a mapping or type name, got {type(data).__name__}")

        values = normalize_keys(data)
        choices = values.get("values", values.get("choices"))
        return cls(
            type=values.get("type", "enum" if choices else "string"),
            required=bool(values.get("required", False)),
            default=values.get("default"),
            description=values.get("description"),
            pattern=values.get("pattern"),
            values=list(choices) if choices is not None else None,
            multiple=bool(values.get("multiple", False)),
            min=values.get("min"),
            max=values.get("max"),
            prompt=values.get("prompt"),
        )

    def validate(self, name: str) -> list[str]:
        """Validate the schema entry itself."""
        errors = []
        if self.type not in VARIABLE_TYPES:
            errors.append(f"Variable '{name}': type must be one of {', '.join(VARIABLE_TYPES)}, got '{self.type}'")
            return errors
        if self.type == "enum" and not self.values:
            errors.append(f"Variable '{name}': enum variables require 'values'")
        if self.pattern is not None:
            try:
                re.compile(self.pattern)
            except re.error as e:
                errors.append(f"Variable '{name}': invalid pattern '{self.pattern}': {e}")
        if self.min is not None and self.max is not None and self.min > self.max:
            errors.append(f"Variable '{name}': min ({self.min}) must be <= max ({self.max})")
        if self.has_default:
            problem = self.check_value(name, self.default)
            if problem:
                errors.append(f"Variable '{name}': invalid default: {problem}")
        return errors

    def check_value(self, name: str, value: Any) -> str | None:
        """Return a description of why ``value`` violates this spec, or None."""
        if value is None:
            return None

        if self.type in ("string", "file", "directory"):
            if not isinstance(value, str):
                return f"Variable '{name}' must be a string, got {value!r}"
            if self.pattern and not re.search(self.pattern, value):
                return f"Variable '{name}' value {value!r} does not match pattern: {self.pattern}"
        elif self.type == "number":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return f"Variable '{name}' must be a number, got {value!r}"
            if self.min is not None and value < self.min:
                return f"Variable '{name}' must be >= {self.min}, got {value!r}"
            if self.max is not None and value > self.max:
                return f"Variable '{name}' must be <= {self.max}, got {value!r}"
        elif self.type == "boolean":
            if not isinstance(value, bool):
                return f"Variable '{name}' must be a boolean, got {value!r}"
        elif self.type == "enum":
            allowed = self.values or []
            if self.multiple and isinstance(value, list):
                invalid = [v for v in value if v not in allowed]
                if invalid:
                    return (
                        f"Value {invalid[0]!r} for variable '{name}' must be one of: "
                        f"{', '.join(str(v) for v in allowed)}"
                    )
            elif value not in allowed:
                return f"Variable '{name}' must be one of: {', '.join(str(v) for v in allowed)}, got {value!r}"
        elif self.type == "array":
            if not isinstance(value, list):
                return f"Variable '{name}' must be an array, got {value!r}"
        elif self.type == "object":
            if not isinstance(value, dict):
                return f"Variable '{name}' must be an object, got {value!r}"
        return None


@dataclass(frozen=True)
class RecipeDependency:
    """Another recipe or package this recipe needs loaded first."""

    name: str
    version: str | None = None
    type: str = "package"  # package, github, http or local
    url: str | None = None
    optional: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "RecipeDependency":
        if isinstance(data, str):
            # "name@version"; a leading "@" belongs to a scoped package name
            name, _, version = data.rpartition("@")
            if not name:
                name, version = data, ""
            return cls(name=name, version=version or None)
        if not isinstance(data, dict):
            raise ParseError(f"Dependency must be a string or mapping, got {type(data).__name__}")
        values = normalize_keys(data)
        return cls(
            name=str(values.get("name", "")),
            version=values.get("version"),
            type=values.get("type", "package"),
            url=values.get("url"),
            optional=bool(values.get("optional", False)),
        )

    def validate(self) -> list[str]:
        """Check the descriptor is well formed (nothing is fetched)."""
        errors = []
        if not self.name:
            errors.append("Dependency missing required field: name")
            return errors
        if self.type not in DEPENDENCY_TYPES:
            errors.append(
                f"Dependency '{self.name}': type must be one of {', '.join(DEPENDENCY_TYPES)}, got '{self.type}'"
            )
        if self.type == "http":
            if not self.url:
                errors.append(f"Dependency '{self.name}': http dependencies require 'url'")
            elif not self.url.startswith(("http://", "https://")):
                errors.append(f"Dependency '{self.name}': url must start with http:// or https://")
        if self.type == "github" and self.name.count("/") < 1:
            errors.append(f"Dependency '{self.name}': github dependencies must be 'owner/repo[/path]'")
        return errors


@dataclass(frozen=True)
class RecipeProvides:
    """A named variable this recipe promises to produce for its group."""

    name: str
    type: str | None = None
    description: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "RecipeProvides":
        if isinstance(data, str):
            return cls(name=data)
        if not isinstance(data, dict):
            raise ParseError(f"Provides entry must be a string or mapping, got {type(data).__name__}")
        return cls(name=str(data.get("name", "")), type=data.get("type"), description=data.get("description"))


@dataclass(frozen=True)
class CompositionConfig:
    """Composition metadata (extends/includes)."""

    extends: str | None = None
    includes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RecipeSettings:
    """Recipe-level execution settings."""

    timeout: float | None = None
    retries: int | None = None
    continue_on_error: bool | None = None
    max_parallel_steps: int | None = None
    working_dir: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RecipeSettings":
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ParseError("'settings' must be a mapping")
        values = normalize_keys(data)
        return cls(
            timeout=values.get("timeout"),
            retries=values.get("retries"),
            continue_on_error=values.get("continue_on_error"),
            max_parallel_steps=values.get("max_parallel_steps"),
            working_dir=values.get("working_dir"),
        )


@dataclass(frozen=True)
class Step:
    """A single unit of work, dispatched to the tool named by ``tool``.

    Kind-specific steps subclass this and fix the ``tool`` default. A plain
    ``Step`` is only produced for unrecognized kinds so the validator can
    report them.
    """

    name: str
    tool: str = ""
    description: str | None = None
    when: str | None = None
    depends_on: list[str] = field(default_factory=list)
    parallel: bool = True
    retries: int | None = None
    timeout: float | None = None  # Seconds
    continue_on_error: bool | None = None
    variables: dict[str, Any] = field(default_factory=dict)  # Step-level variable overrides
    environment: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)  # Unrecognized keys, passed through to tools

    @property
    def tool_name(self) -> str:
        """Name used with ``tool`` to key the tool pool."""
        return "default"

    def validate(self) -> list[str]:
        """Validate step structure and constraints."""
        errors = []

        if not self.name:
            errors.append("Step missing required field: name")
        if not self.tool:
            errors.append(f"Step '{self.name}': missing required field: tool")
        elif self.tool not in TOOL_KINDS:
            errors.append(f"Step '{self.name}': tool must be one of {', '.join(TOOL_KINDS)}, got '{self.tool}'")

        if self.retries is not None and (not isinstance(self.retries, int) or self.retries < 0):
            errors.append(f"Step '{self.name}': retries must be a non-negative integer")
        if self.timeout is not None and self.timeout <= 0:
            errors.append(f"Step '{self.name}': timeout must be positive")
        if not isinstance(self.depends_on, list):
            errors.append(f"Step '{self.name}': dependsOn must be a list of step names")
        elif self.name in self.depends_on:
            errors.append(f"Step '{self.name}': cannot depend on itself")

        errors.extend(self._validate_kind())
        return errors

    def _validate_kind(self) -> list[str]:
        return []


@dataclass(frozen=True)
class TemplateStep(Step):
    tool: str = "template"
    template: str = ""
    output_dir: str | None = None
    overwrite: bool = False

    def _validate_kind(self) -> list[str]:
        if not self.template:
            return [f"Step '{self.name}': template steps require 'template' field"]
        return []


@dataclass(frozen=True)
class ActionStep(Step):
    tool: str = "action"
    action: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_name(self) -> str:
        return self.action or "default"

    def _validate_kind(self) -> list[str]:
        if not self.action:
            return [f"Step '{self.name}': action steps require 'action' field"]
        return []


@dataclass(frozen=True)
class CodemodStep(Step):
    tool: str = "codemod"
    codemod: str = ""
    files: list[str] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_name(self) -> str:
        return self.codemod or "default"

    def _validate_kind(self) -> list[str]:
        errors = []
        if not self.codemod:
            errors.append(f"Step '{self.name}': codemod steps require 'codemod' field")
        if not self.files:
            errors.append(f"Step '{self.name}': codemod steps require at least one entry in 'files'")
        return errors


@dataclass(frozen=True)
class RecipeStep(Step):
    """Runs another recipe as a sub-recipe."""

    tool: str = "recipe"
    recipe: str = ""
    version: str | None = None
    inherit_variables: bool = True
    variable_overrides: dict[str, Any] = field(default_factory=dict)
    variable_mapping: dict[str, str] = field(default_factory=dict)  # parent name <- child name

    def _validate_kind(self) -> list[str]:
        if not self.recipe:
            return [f"Step '{self.name}': recipe steps require 'recipe' field"]
        return []


@dataclass(frozen=True)
class ShellStep(Step):
    tool: str = "shell"
    command: str = ""
    cwd: str | None = None
    output_var: str | None = None  # Variable to export stdout into
    exit_code_var: str | None = None  # Variable to export the exit code into

    def _validate_kind(self) -> list[str]:
        errors = []
        if not self.command or not self.command.strip():
            errors.append(f"Step '{self.name}': shell steps require a non-empty 'command' field")
        for label, var in (("outputVar", self.output_var), ("exitCodeVar", self.exit_code_var)):
            if var and not var.replace("_", "").isalnum():
                errors.append(f"Step '{self.name}': {label} must be alphanumeric with underscores")
        return errors


@dataclass(frozen=True)
class PromptStep(Step):
    tool: str = "prompt"
    variable: str = ""
    message: str | None = None
    prompt_type: str = "input"  # input, confirm, select, multiselect
    choices: list[Any] | None = None
    default: Any = None

    def _validate_kind(self) -> list[str]:
        errors = []
        if not self.variable:
            errors.append(f"Step '{self.name}': prompt steps require 'variable' field")
        if self.prompt_type not in ("input", "confirm", "select", "multiselect"):
            errors.append(f"Step '{self.name}': promptType must be input, confirm, select or multiselect")
        if self.prompt_type in ("select", "multiselect") and not self.choices:
            errors.append(f"Step '{self.name}': {self.prompt_type} prompts require 'choices'")
        return errors


@dataclass(frozen=True)
class SequenceStep(Step):
    """Runs nested steps one after another."""

    tool: str = "sequence"
    steps: list[Step] = field(default_factory=list)

    def _validate_kind(self) -> list[str]:
        return _validate_nested(self)


@dataclass(frozen=True)
class ParallelStep(Step):
    """Runs nested steps concurrently."""

    tool: str = "parallel"
    steps: list[Step] = field(default_factory=list)
    max_concurrency: int | None = None

    def _validate_kind(self) -> list[str]:
        errors = _validate_nested(self)
        if self.max_concurrency is not None and self.max_concurrency < 1:
            errors.append(f"Step '{self.name}': maxConcurrency must be >= 1")
        return errors


@dataclass(frozen=True)
class AiStep(Step):
    tool: str = "ai"
    prompt: str = ""
    output_var: str | None = None
    model: str | None = None

    def _validate_kind(self) -> list[str]:
        if not self.prompt:
            return [f"Step '{self.name}': ai steps require 'prompt' field"]
        return []


def _validate_nested(step: SequenceStep | ParallelStep) -> list[str]:
    errors = []
    if not step.steps:
        errors.append(f"Step '{step.name}': {step.tool} steps require at least one nested step")
    names = [s.name for s in step.steps]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        errors.append(f"Step '{step.name}': duplicate nested step names: {', '.join(duplicates)}")
    for nested in step.steps:
        errors.extend(f"Step '{step.name}': {err}" for err in nested.validate())
    return errors


STEP_TYPES: dict[str, type[Step]] = {
    "template": TemplateStep,
    "action": ActionStep,
    "codemod": CodemodStep,
    "recipe": RecipeStep,
    "shell": ShellStep,
    "prompt": PromptStep,
    "sequence": SequenceStep,
    "parallel": ParallelStep,
    "ai": AiStep,
}


def infer_tool(data: dict[str, Any]) -> str | None:
    """Infer the tool kind of a step written in shorthand form."""
    if "command" in data:
        return "shell"
    if "recipe" in data:
        return "recipe"
    if "prompt_type" in data or ("variable" in data and "message" in data):
        return "prompt"
    if "sequence" in data:
        return "sequence"
    if isinstance(data.get("parallel"), list):
        return "parallel"
    if "steps" in data:
        return "sequence"
    if "template" in data:
        return "template"
    if "action" in data:
        return "action"
    if "codemod" in data:
        return "codemod"
    return None


def parse_step(data: Any, index: int = 0) -> Step:
    """Parse a step mapping into the step class for its tool kind."""
    if not isinstance(data, dict):
        raise ParseError(f"Step {index + 1} must be a mapping, got {type(data).__name__}")

    values = normalize_keys(data)
    tool = values.pop("tool", None) or infer_tool(values)
    if tool is None:
        raise ParseError(f"Step '{values.get('name', index + 1)}': cannot determine tool kind; set 'tool'")

    # Shorthand nested forms: sequence: [...] / parallel: [...]
    if tool == "sequence" and "sequence" in values:
        values["steps"] = values.pop("sequence")
    if tool == "parallel" and isinstance(values.get("parallel"), list):
        values["steps"] = values.pop("parallel")

    if "steps" in values:
        nested = values["steps"]
        if not isinstance(nested, list):
            raise ParseError(f"Step '{values.get('name', index + 1)}': 'steps' must be a list")
        values["steps"] = [parse_step(item, i) for i, item in enumerate(nested)]

    if isinstance(values.get("depends_on"), str):
        values["depends_on"] = [values["depends_on"]]

    step_cls = STEP_TYPES.get(tool, Step)
    known = {f.name for f in fields(step_cls)}
    kwargs: dict[str, Any] = {"tool": tool}
    params = dict(values.pop("params", None) or {})
    for key, value in values.items():
        if key in known:
            kwargs[key] = value
        else:
            params[key] = value
    kwargs["params"] = params
    kwargs.setdefault("name", "")
    kwargs["name"] = str(kwargs["name"]) if kwargs["name"] is not None else ""
    return step_cls(**kwargs)


@dataclass(frozen=True)
class RecipeConfig:
    """A complete recipe document. Immutable once loaded."""

    name: str
    description: str = ""
    version: str = "1.0.0"
    author: str | None = None
    tags: list[str] = field(default_factory=list)
    variables: dict[str, VariableSpec] = field(default_factory=dict)
    steps: list[Step] = field(default_factory=list)
    dependencies: list[RecipeDependency] = field(default_factory=list)
    provides: list[RecipeProvides] = field(default_factory=list)
    composition: CompositionConfig = field(default_factory=CompositionConfig)
    settings: RecipeSettings = field(default_factory=RecipeSettings)
    source_path: str | None = field(default=None, compare=False)  # File the recipe was loaded from

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]

    @property
    def provided_names(self) -> list[str]:
        return [p.name for p in self.provides]

    def get_step(self, name: str) -> Step | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def required_inputs(self) -> list[str]:
        """Names of required variables that have no default."""
        return [name for name, spec in self.variables.items() if spec.required and not spec.has_default]

    @classmethod
    def from_dict(cls, data: Any, source_path: str | None = None) -> "RecipeConfig":
        """Build a recipe from a parsed YAML document."""
        if not isinstance(data, dict):
            raise ParseError("Recipe document must be a mapping", source_path)

        steps_data = data.get("steps") or []
        if not isinstance(steps_data, list):
            raise ParseError("'steps' must be a list", source_path)

        variables_data = data.get("variables") or {}
        if not isinstance(variables_data, dict):
            raise ParseError("'variables' must be a mapping", source_path)

        dependencies_data = data.get("dependencies") or []
        if not isinstance(dependencies_data, list):
            raise ParseError("'dependencies' must be a list", source_path)

        provides_data = data.get("provides") or []
        if not isinstance(provides_data, list):
            raise ParseError("'provides' must be a list", source_path)

        includes = data.get("includes") or []
        if isinstance(includes, str):
            includes = [includes]

        try:
            return cls(
                name=str(data.get("name") or ""),
                description=data.get("description") or "",
                version=str(data.get("version") or "1.0.0"),
                author=data.get("author"),
                tags=list(data.get("tags") or []),
                variables={str(k): VariableSpec.from_dict(v) for k, v in variables_data.items()},
                steps=[parse_step(sd, i) for i, sd in enumerate(steps_data)],
                dependencies=[RecipeDependency.from_dict(d) for d in dependencies_data],
                provides=[RecipeProvides.from_dict(p) for p in provides_data],
                composition=CompositionConfig(extends=data.get("extends"), includes=list(includes)),
                settings=RecipeSettings.from_dict(data.get("settings")),
                source_path=source_path,
            )
        except ParseError as e:
            if source_path and e.source is None:
                raise ParseError(str(e), source_path) from e
            raise
        except TypeError as e:
            raise ParseError(f"Invalid recipe structure: {e}", source_path) from e

    @classmethod
    def from_yaml_text(cls, text: str, source_path: str | None = None) -> "RecipeConfig":
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ParseError(f"Invalid YAML: {e}", source_path) from e
        return cls.from_dict(data, source_path)

    @classmethod
    def from_yaml(cls, path: Path) -> "RecipeConfig":
        """Load recipe from YAML file."""
        if not path.exists():
            raise FileNotFoundError(f"Recipe file not found: {path}")

        with open(path, encoding="utf-8") as f:
            text = f.read()
        return cls.from_yaml_text(text, str(path))
