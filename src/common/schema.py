"""JSON Schema validation for tool arguments."""

from typing import Any

from jsonschema import Draft7Validator, SchemaError
from jsonschema.validators import validator_for


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    The validator class is chosen from the schema's ``$schema`` keyword,
    falling back to Draft 7 which is what MCP servers usually emit.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator_cls = validator_for(schema, default=Draft7Validator)
    try:
        validator_cls.check_schema(schema)
    except SchemaError:
        # Unusable schema; leave validation to the server
        return True, []

    errors = sorted(validator_cls(schema).iter_errors(data), key=lambda e: [str(p) for p in e.path])
    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages
