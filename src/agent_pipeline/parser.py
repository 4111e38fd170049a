# parser.py
# YAML pipeline loading. Produces an immutable, validated Pipeline or raises
# PipelineValidationError naming the offending node and field.

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from agent_pipeline.models import AgentNode, GateNode, Pipeline, TaskNode

NODE_MODELS = {
    "task": TaskNode,
    "agent": AgentNode,
    "gate": GateNode,
}

REQUIRED_FIELDS = {
    "task": ("command",),
    "agent": ("prompt", "tools", "output_schema"),
    "gate": ("command",),
}


class PipelineValidationError(Exception):
    """Raised for malformed pipeline files. Always fatal at load time."""

    def __init__(self, message: str, node_id: str | None = None, field: str | None = None) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.field = field


class PipelineParser:
    def load_from_file(self, file_path: str) -> Pipeline:
        resolved = Path(file_path).resolve()
        try:
            content = resolved.read_text(encoding="utf-8")
        except OSError as exc:
            raise PipelineValidationError(f"Failed to read pipeline at {resolved}: {exc}") from exc
        return self.parse_yaml(content)

    def parse_yaml(self, content: str) -> Pipeline:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as exc:
            raise PipelineValidationError(f"Invalid pipeline YAML: {exc}") from exc

        if not isinstance(data, dict):
            raise PipelineValidationError("Invalid pipeline YAML: expected object")

        raw_nodes = data.get("nodes")
        if not isinstance(raw_nodes, list):
            raise PipelineValidationError('Invalid pipeline: missing or invalid "nodes" array', field="nodes")
        if not raw_nodes:
            raise PipelineValidationError("Invalid pipeline: at least one node is required", field="nodes")

        nodes = [self._parse_node(raw, index) for index, raw in enumerate(raw_nodes)]

        seen: set[str] = set()
        for node in nodes:
            if node.id in seen:
                raise PipelineValidationError(f"Duplicate node ID: {node.id}", node_id=node.id, field="id")
            seen.add(node.id)

        for key in ("name", "description"):
            if data.get(key) is not None and not isinstance(data[key], str):
                raise PipelineValidationError(f'Pipeline "{key}" must be a string', field=key)

        return Pipeline(name=data.get("name"), description=data.get("description"), nodes=nodes)

    def _parse_node(self, raw: Any, index: int):
        if not isinstance(raw, dict):
            raise PipelineValidationError(f"Node at index {index} is invalid: expected object")

        node_id = raw.get("id")
        if not node_id or not isinstance(node_id, str):
            raise PipelineValidationError(f'Node at index {index} is missing required "id" field', field="id")

        node_type = raw.get("type")
        if not node_type or not isinstance(node_type, str):
            raise PipelineValidationError(
                f'Node "{node_id}" is missing required "type" field', node_id=node_id, field="type"
            )

        model = NODE_MODELS.get(node_type)
        if model is None:
            raise PipelineValidationError(
                f'Node "{node_id}" has invalid type: {node_type}', node_id=node_id, field="type"
            )

        for field in REQUIRED_FIELDS[node_type]:
            if raw.get(field) in (None, ""):
                raise PipelineValidationError(
                    f'{node_type.capitalize()} node "{node_id}" is missing required "{field}" field',
                    node_id=node_id,
                    field=field,
                )

        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or None
            raise PipelineValidationError(
                f'{node_type.capitalize()} node "{node_id}" has invalid "{field}" field: {first["msg"]}',
                node_id=node_id,
                field=field,
            ) from exc
