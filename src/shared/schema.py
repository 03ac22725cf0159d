"""JSON Schema for the dispatch center's reply."""

from typing import Any

from jsonschema import Draft7Validator

# Payload the dispatch center must return: a list of {id, name}
DISPATCH_CANDIDATES_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "id": {"type": "string"},
            "name": {"type": "string", "minLength": 1},
        },
        "required": ["id", "name"],
    },
}

_dispatch_validator = Draft7Validator(DISPATCH_CANDIDATES_SCHEMA)


def dispatch_payload_errors(data: Any) -> list[str]:
    """
    Check a decoded dispatch reply.

    Returns:
        Readable error messages, empty when the payload is valid
    """
    messages = []
    for error in _dispatch_validator.iter_errors(data):
        location = "/".join(str(p) for p in error.absolute_path)
        messages.append(f"{location}: {error.message}" if location else error.message)
    return messages
