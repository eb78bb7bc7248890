import re
from typing import Any, Mapping

_MISSING = object()


def get_path(document: Mapping[str, Any], path: str, default: Any = _MISSING) -> Any:
    """
    Resolve a dotted path such as "builder.commit.id" inside a document.

    By default returns a sentinel when any segment is missing so absent and
    None can be told apart.
    """
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return default
        value = value[part]
    return value


def match_value(value: Any, expected: Any) -> bool:
    """
    Apply store-style matching rules to a single field.

    - compiled regex: the field must be a string the pattern searches
    - list field with a scalar: the list must contain it
    - None: the field must be absent or None
    - anything else: equality
    """
    if value is _MISSING:
        return expected is None
    if isinstance(expected, re.Pattern):
        return isinstance(value, str) and expected.search(value) is not None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def matches_query(document: Mapping[str, Any], query: Mapping[str, Any]) -> bool:
    """True when every field of the query matches the document."""
    for path, expected in query.items():
        if not match_value(get_path(document, path), expected):
            return False
    return True
