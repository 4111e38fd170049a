# schema.py
# Compact output-schema DSL for agent nodes.
#
#   string | number | boolean
#   array<T>
#   {key: T, other: array<{a: string}>}
#
# A structured (dict) form is accepted too: either JSON-Schema-like
# ({"type": "array", "items": ...}) or a bare {key: T} mapping.

from dataclasses import dataclass
from typing import Any, Callable

PRIMITIVES = ("string", "number", "boolean")


class SchemaError(Exception):
    """Raised for schema source that cannot be parsed."""


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] | None = None


@dataclass
class ParsedSchema:
    type: str
    validate: Callable[[Any], ValidationResult]
    to_wire_schema: Callable[[], dict[str, Any]]


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _split_properties(content: str) -> list[str]:
    """Split `a: string, b: {c: number}` on top-level commas only."""
    pairs: list[str] = []
    current = ""
    depth = 0
    for char in content:
        if char in "{<":
            depth += 1
        elif char in "}>":
            depth -= 1
        elif char == "," and depth == 0:
            pairs.append(current.strip())
            current = ""
            continue
        current += char
    if current.strip():
        pairs.append(current.strip())
    return pairs


class SchemaParser:
    def parse(self, source: str | dict | list) -> ParsedSchema:
        if isinstance(source, str):
            return self._parse_string(source)
        if isinstance(source, dict):
            return self._parse_structured(source)
        if isinstance(source, list) and len(source) == 1:
            return self._array(self.parse(source[0]))
        raise SchemaError(f"Invalid schema: {source!r}")

    # ------------------------------------------------------------------
    # Source forms
    # ------------------------------------------------------------------

    def _parse_string(self, source: str) -> ParsedSchema:
        trimmed = source.strip()

        if trimmed in PRIMITIVES:
            return self._primitive(trimmed)

        if trimmed.startswith("array<") and trimmed.endswith(">"):
            return self._array(self._parse_string(trimmed[6:-1]))

        if trimmed.startswith("{") and trimmed.endswith("}"):
            properties: dict[str, ParsedSchema] = {}
            content = trimmed[1:-1].strip()
            for pair in _split_properties(content) if content else []:
                key, sep, type_source = pair.partition(":")
                if not sep or not key.strip():
                    raise SchemaError(f"Invalid object property: {pair}")
                properties[key.strip()] = self._parse_string(type_source)
            return self._object(properties)

        raise SchemaError(f"Invalid schema: {source}")

    def _parse_structured(self, source: dict) -> ParsedSchema:
        kind = source.get("type")
        if kind is None:
            return self._object({key: self.parse(value) for key, value in source.items()})
        if kind in PRIMITIVES:
            return self._primitive(kind)
        if kind == "array":
            if "items" not in source:
                raise SchemaError("Array schema is missing 'items'")
            return self._array(self.parse(source["items"]))
        if kind == "object":
            properties = source.get("properties") or {}
            return self._object({key: self.parse(value) for key, value in properties.items()})
        raise SchemaError(f"Invalid schema type: {kind!r}")

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    def _primitive(self, kind: str) -> ParsedSchema:
        def validate(value: Any) -> ValidationResult:
            actual = _type_name(value)
            if actual == kind:
                return ValidationResult(valid=True)
            return ValidationResult(valid=False, errors=[f"Expected {kind}, got {actual}"])

        return ParsedSchema(type=kind, validate=validate, to_wire_schema=lambda: {"type": kind})

    def _array(self, inner: ParsedSchema) -> ParsedSchema:
        def validate(value: Any) -> ValidationResult:
            if not isinstance(value, list):
                return ValidationResult(valid=False, errors=[f"Expected array, got {_type_name(value)}"])
            errors = []
            for index, item in enumerate(value):
                result = inner.validate(item)
                if not result.valid:
                    errors.append(f"Item {index}: {', '.join(result.errors or [])}")
            return ValidationResult(valid=not errors, errors=errors or None)

        return ParsedSchema(
            type="array",
            validate=validate,
            to_wire_schema=lambda: {"type": "array", "items": inner.to_wire_schema()},
        )

    def _object(self, properties: dict[str, ParsedSchema]) -> ParsedSchema:
        required = list(properties)

        def validate(value: Any) -> ValidationResult:
            if not isinstance(value, dict):
                return ValidationResult(valid=False, errors=[f"Expected object, got {_type_name(value)}"])
            errors = []
            for key in required:
                if key not in value:
                    errors.append(f"Missing required property: {key}")
                    continue
                result = properties[key].validate(value[key])
                if not result.valid:
                    errors.append(f'Property "{key}": {", ".join(result.errors or [])}')
            return ValidationResult(valid=not errors, errors=errors or None)

        def to_wire_schema() -> dict[str, Any]:
            return {
                "type": "object",
                "properties": {key: schema.to_wire_schema() for key, schema in properties.items()},
                "required": required,
            }

        return ParsedSchema(type="object", validate=validate, to_wire_schema=to_wire_schema)
