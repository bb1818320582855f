"""
JSON-Schema subset validator for tool arguments.

Supports ``type`` (single or list), ``required``, ``properties``,
``additionalProperties: false``, ``items``, ``minItems``/``maxItems``,
``minLength``/``maxLength``, ``minimum``/``maximum`` and ``enum``.

Validation never raises: violations come back as path-prefixed strings,
and malformed schema nodes are skipped.
"""
import json
from typing import Any, Dict, List, Optional


ROOT_PATH = "args"


def type_of(value: Any) -> str:
    """Name the JSON type of a Python value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _matches_type(expected: str, value: Any) -> bool:
    actual = type_of(value)
    if expected == "number":
        return actual in ("integer", "number")
    if expected == "integer":
        return actual == "integer" or (actual == "number" and float(value).is_integer())
    return expected == actual


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _fmt(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(value)


def normalize_schema(schema: Any) -> Optional[Dict[str, Any]]:
    """
    Normalize a tool parameter schema.

    A schema with ``type`` is used as-is; a bare ``{properties, required}``
    shape is wrapped as an object schema. Anything else means "accept".

    Returns:
        The schema to validate against, or None to accept any arguments
    """
    if not isinstance(schema, dict) or not schema:
        return None
    if "type" in schema:
        return schema
    if "properties" in schema or "required" in schema:
        return {"type": "object", **schema}
    return None


class SchemaValidator:
    """Validates values against a draft-07-like schema subset."""

    def validate(self, schema: Any, value: Any, path: str = ROOT_PATH) -> List[str]:
        """
        Validate ``value`` against ``schema``.

        Args:
            schema: Schema node; non-mapping nodes are ignored
            value: Value to check
            path: Path prefix for error messages

        Returns:
            List of violations, empty when valid
        """
        errors: List[str] = []
        self._validate_node(schema, value, path, errors)
        return errors

    def _validate_node(self, schema: Any, value: Any, path: str, errors: List[str]) -> None:
        if not isinstance(schema, dict):
            return

        types = self._declared_types(schema)
        if types:
            if not any(_matches_type(t, value) for t in types):
                errors.append(f"{path}: expected type {'|'.join(types)}, got {type_of(value)}")
                return

        if "enum" in schema and isinstance(schema["enum"], list):
            if not self._enum_type_matches(schema["enum"], value):
                errors.append(f"{path}: value {_fmt(value)} not in enum {_fmt(schema['enum'])}")

        if isinstance(value, dict):
            if not types or "object" in types or "properties" in schema or "required" in schema:
                self._validate_object(schema, value, path, errors)
        elif isinstance(value, (list, tuple)):
            self._validate_array(schema, value, path, errors)
        elif isinstance(value, str):
            self._validate_string(schema, value, path, errors)
        elif _is_number(value):
            self._validate_number(schema, value, path, errors)

    @staticmethod
    def _declared_types(schema: Dict[str, Any]) -> List[str]:
        declared = schema.get("type")
        if isinstance(declared, str):
            return [declared]
        if isinstance(declared, list):
            return [t for t in declared if isinstance(t, str)]
        return []

    @staticmethod
    def _enum_type_matches(options: List[Any], value: Any) -> bool:
        # True == 1 in Python; an enum of [1] must not accept true
        return any(option == value and type_of(option) == type_of(value) or
                   (_is_number(option) and _is_number(value) and option == value)
                   for option in options)

    def _validate_object(self, schema: Dict[str, Any], value: Dict[str, Any], path: str,
                         errors: List[str]) -> None:
        required = schema.get("required")
        if isinstance(required, list):
            for req in required:
                if isinstance(req, str) and req not in value:
                    errors.append(f'{path}: missing required property "{req}"')

        properties = schema.get("properties")
        if not isinstance(properties, dict):
            properties = {}

        for key, prop_schema in properties.items():
            if key in value:
                self._validate_node(prop_schema, value[key], f"{path}.{key}", errors)

        if schema.get("additionalProperties") is False:
            for key in value:
                if key not in properties:
                    errors.append(f'{path}: unexpected property "{key}"')

    def _validate_array(self, schema: Dict[str, Any], value: Any, path: str,
                        errors: List[str]) -> None:
        min_items = schema.get("minItems")
        if _is_count(min_items) and len(value) < min_items:
            errors.append(f"{path}: array length {len(value)} < minItems {min_items}")

        max_items = schema.get("maxItems")
        if _is_count(max_items) and len(value) > max_items:
            errors.append(f"{path}: array length {len(value)} > maxItems {max_items}")

        items = schema.get("items")
        if isinstance(items, dict):
            for index, item in enumerate(value):
                self._validate_node(items, item, f"{path}[{index}]", errors)

    def _validate_string(self, schema: Dict[str, Any], value: str, path: str,
                         errors: List[str]) -> None:
        min_length = schema.get("minLength")
        if _is_count(min_length) and len(value) < min_length:
            errors.append(f"{path}: string length {len(value)} < minLength {min_length}")

        max_length = schema.get("maxLength")
        if _is_count(max_length) and len(value) > max_length:
            errors.append(f"{path}: string length {len(value)} > maxLength {max_length}")

    def _validate_number(self, schema: Dict[str, Any], value: Any, path: str,
                         errors: List[str]) -> None:
        minimum = schema.get("minimum")
        if _is_number(minimum) and value < minimum:
            errors.append(f"{path}: number {value} < minimum {minimum}")

        maximum = schema.get("maximum")
        if _is_number(maximum) and value > maximum:
            errors.append(f"{path}: number {value} > maximum {maximum}")


_default_validator = SchemaValidator()


def validate(schema: Any, value: Any, path: str = ROOT_PATH) -> List[str]:
    """Validate with a shared validator instance."""
    return _default_validator.validate(schema, value, path)
