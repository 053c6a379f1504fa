import re

from queryrouter.errors import RejectedQueryError

DEFAULT_LIMIT = 100
MAX_LIMIT = 500

_LIMIT_RE = re.compile(r"LIMIT\s+(\d+)", re.IGNORECASE)
_TRAILING_SEMICOLON_RE = re.compile(r";?$")


def validate_query(raw_query: str) -> str:
    """Check a query is a read-only SELECT and make sure it carries a LIMIT.

    Queries without a LIMIT get ``LIMIT 100`` appended in place of the
    optional trailing semicolon. Queries with ``LIMIT n`` pass through
    trimmed but otherwise untouched, unless ``n`` exceeds 500.
    """
    query = raw_query.strip()

    if not query.upper().startswith("SELECT"):
        raise RejectedQueryError("Only SELECT queries are allowed.")

    match = _LIMIT_RE.search(query)
    if match is None:
        return _TRAILING_SEMICOLON_RE.sub(f" LIMIT {DEFAULT_LIMIT};", query, count=1)

    if int(match.group(1)) > MAX_LIMIT:
        raise RejectedQueryError(f"Query limit cannot exceed {MAX_LIMIT}.")

    return query
