from __future__ import annotations

import re

from querybridge.core.errors import ReadOnlyViolation


MUTATING_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "CREATE",
    "ALTER",
    "TRUNCATE",
    "GRANT",
    "REVOKE",
    "EXEC",
)

_LEADING_KEYWORD = re.compile(r"^\s*(" + "|".join(MUTATING_KEYWORDS) + r")\b", re.IGNORECASE)
_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)


def _strip_comments(sql: str) -> str:
    return _LINE_COMMENT.sub(" ", _BLOCK_COMMENT.sub(" ", sql))


def leading_mutation(sql: str) -> str | None:
    """Return the mutating keyword that opens any statement in ``sql``, if one does."""
    for statement in _strip_comments(sql).split(";"):
        match = _LEADING_KEYWORD.match(statement)
        if match:
            return match.group(1).upper()
    return None


def enforce_read_only(sql: str, *, read_only: bool) -> None:
    # Runs before a pool is even acquired so a rejected statement never reaches the network.
    if not read_only:
        return
    keyword = leading_mutation(sql)
    if keyword is not None:
        raise ReadOnlyViolation(
            f"{keyword} statements are not allowed on a read-only connection",
            keyword=keyword,
        )
