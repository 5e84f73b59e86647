from typing import Optional

MAX_QUERY_CHARS = 500
MIN_QUERY_CHARS = 2


class QueryValidationError(ValueError):
    """The query was rejected before any upstream call."""


def validate_query(raw: Optional[str]) -> str:
    """Return the trimmed query or raise :class:`QueryValidationError`.

    The length ceiling applies to the raw value, the floor to the trimmed one.
    """
    if raw is None or not raw.strip():
        raise QueryValidationError("Query is required")
    if len(raw) > MAX_QUERY_CHARS:
        raise QueryValidationError(f"Query too long (max {MAX_QUERY_CHARS} characters)")
    query = raw.strip()
    if len(query) < MIN_QUERY_CHARS:
        raise QueryValidationError(f"Query must be at least {MIN_QUERY_CHARS} characters")
    return query


def parse_start_index(raw: Optional[str]) -> int:
    try:
        value = int(raw) if raw is not None else 1
    except ValueError:
        return 1
    return max(1, value)
