# buildloop/agent/catalog.py
"""
Tool definitions offered to the model and their per-provider wire formats.

Schemas are declared once, provider-neutral; ``ToolCatalog.for_provider``
looks the formatter up in a table so adding a provider is one entry.
"""

from dataclasses import dataclass
from typing import Callable

READ_FILES = "read_files"
APPLY_CHANGES = "apply_changes"
READ_FILES_MAX_PATHS = 10


@dataclass(frozen=True)
class ToolSpec:
    """Provider-neutral tool definition."""

    name: str
    description: str
    parameters: dict


READ_FILES_SPEC = ToolSpec(
    name=READ_FILES,
    description=(
        "Read the current content of project files. "
        f"At most {READ_FILES_MAX_PATHS} paths per call; missing files come back as null."
    ),
    parameters={
        "type": "object",
        "properties": {
            "paths": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Project-relative file paths, e.g. src/App.jsx",
            }
        },
        "required": ["paths"],
    },
)

APPLY_CHANGES_SPEC = ToolSpec(
    name=APPLY_CHANGES,
    description=(
        "Create, modify or delete project files. Every file is validated; if any "
        "file fails, nothing is applied and the errors are returned so you can fix them."
    ),
    parameters={
        "type": "object",
        "properties": {
            "files": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "path": {"type": "string", "description": "Project-relative path"},
                        "action": {"type": "string", "enum": ["create", "modify", "delete"]},
                        "content": {
                            "type": "string",
                            "description": "Full file content (omit for delete)",
                        },
                        "language": {"type": "string"},
                    },
                    "required": ["path", "action"],
                },
            },
            "summary": {
                "type": "string",
                "description": "One or two sentences describing the change for the user",
            },
            "envVarsNeeded": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Environment variable names the code now expects",
            },
        },
        "required": ["files", "summary"],
    },
)


def _function_format(spec: ToolSpec) -> dict:
    return {
        "type": "function",
        "function": {
            "name": spec.name,
            "description": spec.description,
            "parameters": spec.parameters,
        },
    }


def _anthropic_format(spec: ToolSpec) -> dict:
    return {
        "name": spec.name,
        "description": spec.description,
        "input_schema": spec.parameters,
    }


PROVIDER_FORMATS: dict[str, Callable[[ToolSpec], dict]] = {
    "openai": _function_format,
    "lm_studio": _function_format,
    "ollama": _function_format,
    "anthropic": _anthropic_format,
}


class ToolCatalog:
    """The fixed set of tools an IterationAgent exposes."""

    def __init__(self, specs: tuple[ToolSpec, ...] = (READ_FILES_SPEC, APPLY_CHANGES_SPEC)) -> None:
        self._specs = {spec.name: spec for spec in specs}

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def for_provider(self, provider: str) -> list[dict]:
        """
        Tool schemas in ``provider``'s wire format.

        Raises:
            ValueError: If the provider has no registered format
        """
        try:
            formatter = PROVIDER_FORMATS[provider]
        except KeyError:
            raise ValueError(
                f"No tool format for provider '{provider}' "
                f"(known: {', '.join(sorted(PROVIDER_FORMATS))})"
            ) from None
        return [formatter(spec) for spec in self._specs.values()]
