# template.py
# {{expr}} interpolation against accumulated pipeline state.
#
# Supported expressions:
#   {{prompt}}                     user prompt for the run
#   {{changed_files}}              every file recorded so far, space separated
#   {{node}}                       a node's full output
#   {{node.key.nested}}            nested property access
#   {{node.items[].field}}         map a field over a list

import json
import re
from typing import Any

from agent_pipeline.models import PipelineState

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")
_MISSING = object()


class TemplateError(Exception):
    """Raised when a placeholder cannot be resolved against the state."""


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        if any(isinstance(item, (dict, list)) for item in value):
            return json.dumps(value)
        return " ".join(_render(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


def _get(container: Any, key: str) -> Any:
    if isinstance(container, dict):
        return container.get(key, _MISSING)
    return _MISSING


class TemplateResolver:
    """Pure resolver: the same template and state always render the same string."""

    def resolve(self, template: str, state: PipelineState) -> str:
        def replace(match: re.Match) -> str:
            expression = match.group(1).strip()
            value = self.resolve_expression(expression, state)
            if value is _MISSING or value is None:
                raise TemplateError(f"Unable to resolve template expression: {expression}")
            return _render(value)

        return _PLACEHOLDER.sub(replace, template)

    def resolve_expression(self, expression: str, state: PipelineState) -> Any:
        if expression == "changed_files":
            return list(state.changed_files)
        if expression == "prompt":
            return state.user_prompt if state.user_prompt is not None else _MISSING

        parts = expression.split(".")
        outcome = state.nodes.get(parts[0])
        if outcome is None:
            return _MISSING

        current = outcome.output
        for index, part in enumerate(parts[1:], start=1):
            if part.endswith("[]"):
                items = _get(current, part[:-2])
                if not isinstance(items, list):
                    return _MISSING
                remaining = parts[index + 1:]
                if not remaining:
                    return items
                mapped = []
                for item in items:
                    value = item
                    for prop in remaining:
                        value = _get(value, prop)
                        if value is _MISSING:
                            return _MISSING
                    mapped.append(value)
                return mapped

            current = _get(current, part)
            if current is _MISSING:
                return _MISSING

        return current
