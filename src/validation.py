"""
Validation of Postgresql records submitted through the API.
"""

import logging
import re
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63

POSTGRESQL_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["defaultuser", "password"],
    "properties": {
        "defaultuser": {"type": "string", "minLength": 1},
        "password": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}

_spec_validator = Draft7Validator(POSTGRESQL_SPEC_SCHEMA)


def validate_name(value: str, field_name: str = "name") -> Tuple[bool, Optional[str]]:
    """
    Check that a name follows Kubernetes DNS label conventions.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not value:
        return False, f"{field_name} cannot be empty"
    if len(value) > MAX_NAME_LENGTH:
        return False, f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters"
    if not NAME_PATTERN.match(value):
        return False, (
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return True, None


def validate_postgresql_spec(spec: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate a Postgresql spec against its JSON schema.

    Args:
        spec: The spec as submitted (wire keys).

    Returns:
        Tuple of (is_valid, error_message). Error messages never echo the
        submitted values, since the spec carries a password.
    """
    errors = sorted(_spec_validator.iter_errors(spec), key=lambda e: list(e.path))
    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        if error.validator in ("required", "additionalProperties"):
            # These messages name keys only
            error_messages.append(f"{path}: {error.message}")
        else:
            error_messages.append(f"{path}: failed '{error.validator}' check")

    return False, "; ".join(error_messages)
