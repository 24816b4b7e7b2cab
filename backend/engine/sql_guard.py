"""
SQL Guard — read-only check over compiled query templates.
===========================================================
Compiled templates are assembled from trusted fragments only, so a failure
here is a compiler defect, not bad user input. The check still runs on every
compile: parse (sqlglot) → single SELECT → no write keywords → only
allow-listed tables.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

import sqlglot
from sqlglot import exp

from engine.metric_templates import ALLOWED_TABLES

# Write keywords that must never appear
_WRITE_KEYWORDS = re.compile(
    r"\b(INSERT|UPDATE|DELETE|DROP|ALTER|TRUNCATE|CREATE|GRANT|REVOKE|MERGE|COPY)\b",
    re.IGNORECASE,
)


def check_read_only(
    sql: str,
    allowed_tables: Iterable[str] = ALLOWED_TABLES,
) -> tuple[bool, Optional[str]]:
    """
    Returns
    -------
    (is_safe, error_msg)
    - On success: (True, None)
    - On failure: (False, error_message)
    """
    if not sql or not sql.strip():
        return False, "Empty SQL template."

    match = _WRITE_KEYWORDS.search(sql)
    if match:
        return False, f"Write keyword in template: {match.group(1)}"

    if ";" in sql:
        return False, "Multiple statements are not allowed."

    try:
        parsed = sqlglot.parse_one(sql, dialect="postgres")
    except sqlglot.errors.SqlglotError as e:
        return False, f"Template does not parse: {e}"

    if not isinstance(parsed, exp.Select):
        return False, "Only SELECT templates are allowed."

    allowed = {t.lower() for t in allowed_tables}
    tables_used = {t.name.lower() for t in parsed.find_all(exp.Table) if t.name}
    unknown = tables_used - allowed
    if unknown:
        return False, f"Template references unknown tables: {', '.join(sorted(unknown))}"

    return True, None
