"""JSON Schema utilities for tool input schemas."""

import json
from typing import Any

from jsonschema import Draft7Validator


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft7Validator(schema)
    errors = list(validator.iter_errors(data))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


def clean_input_schema(schema: Any) -> dict[str, Any]:
    """
    Return a JSON-serializable copy of a tool input schema.

    MCP SDK objects may carry non-serializable attributes; anything that
    does not survive a JSON round-trip yields an empty object schema.
    """
    if not schema:
        return {}

    if hasattr(schema, "model_dump"):
        schema = schema.model_dump(mode="json", exclude_none=True)

    try:
        cleaned = json.loads(json.dumps(schema))
    except (TypeError, ValueError):
        return {}

    return cleaned if isinstance(cleaned, dict) else {}


def empty_object_schema() -> dict[str, Any]:
    """Schema for tools that accept no arguments."""
    return {"type": "object", "properties": {}, "required": []}
