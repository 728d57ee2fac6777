"""
Validation for free-form label and metadata maps.

Labels and metadata arrive from the protocol layer as JSON-like objects.
They are checked once, at the boundary, and travel through the pipeline as
plain Dict[str, str].
"""

from typing import Any, Dict, Mapping, Optional

from ..core.status import Status, StatusOr


MAX_KEY_LENGTH = 255
MAX_VALUE_LENGTH = 4096


def validate_string_map(
    value: Optional[Any],
    field_name: str = "labels",
) -> StatusOr[Dict[str, str]]:
    """
    Validate and copy a string-to-string map.

    Args:
        value: Candidate mapping (None is treated as empty)
        field_name: Name used in error messages

    Returns:
        StatusOr with a fresh dict, or INVALID_ARGUMENT describing the
        first offending entry
    """
    if value is None:
        return StatusOr.of_value({})
    if not isinstance(value, Mapping):
        return StatusOr.of_status(Status.invalid_argument(
            f"{field_name} must be a mapping of string to string, "
            f"got {type(value).__name__}"
        ))

    result: Dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key.strip():
            return StatusOr.of_status(Status.invalid_argument(
                f"{field_name} keys must be non-empty strings, got {key!r}"
            ))
        if len(key) > MAX_KEY_LENGTH:
            return StatusOr.of_status(Status.invalid_argument(
                f"{field_name} key '{key[:32]}...' exceeds {MAX_KEY_LENGTH} characters"
            ))
        if not isinstance(item, str):
            return StatusOr.of_status(Status.invalid_argument(
                f"{field_name}['{key}'] must be a string, got {type(item).__name__}"
            ))
        if len(item) > MAX_VALUE_LENGTH:
            return StatusOr.of_status(Status.invalid_argument(
                f"{field_name}['{key}'] exceeds {MAX_VALUE_LENGTH} characters"
            ))
        result[key] = item
    return StatusOr.of_value(result)


def matches_label_selectors(
    labels: Mapping[str, str],
    selectors: Optional[Mapping[str, str]],
) -> bool:
    """True if every selector key is present in labels with an equal value."""
    if not selectors:
        return True
    return all(labels.get(key) == value for key, value in selectors.items())
