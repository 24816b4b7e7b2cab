"""Shared SQL assertions for the compiler and guard tests."""

import sqlglot
from sqlglot import exp


def string_literals(sql: str) -> set[str]:
    """Every quoted string literal in a template."""
    parsed = sqlglot.parse_one(sql, dialect="postgres")
    return {lit.this for lit in parsed.find_all(exp.Literal) if lit.is_string}
