"""SQL text helpers shared by the schema and data dumpers."""

import re

_SIMPLE_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_$]*$")

# PostgreSQL reserved keywords; these cannot appear unquoted as names.
RESERVED_KEYWORDS = frozenset(
    """
    all analyse analyze and any array as asc asymmetric authorization binary
    both case cast check collate collation column concurrently constraint
    create cross current_catalog current_date current_role current_schema
    current_time current_timestamp current_user default deferrable desc
    distinct do else end except false fetch for foreign freeze from full
    grant group having ilike in initially inner intersect into is isnull join
    lateral leading left like limit localtime localtimestamp natural not
    notnull null offset on only or order outer overlaps placing primary
    references returning right select session_user similar some symmetric
    system_user table tablesample then to trailing true union unique user
    using variadic verbose when where window with
    """.split()
)


def quote_identifier(name: str) -> str:
    """Quote *name* only when PostgreSQL would otherwise misread it.

    Examples:
        >>> quote_identifier("users")
        'users'
        >>> quote_identifier("order")
        '"order"'
        >>> quote_identifier("CamelCase")
        '"CamelCase"'
    """
    if _SIMPLE_IDENTIFIER.match(name) and name not in RESERVED_KEYWORDS:
        return name
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Single-quote *value*, doubling embedded quotes.

    Example:
        >>> quote_literal("it's")
        "'it''s'"
    """
    return "'" + value.replace("'", "''") + "'"


def error_summary(error: Exception) -> str:
    """First line of a driver error message (server errors span several)."""
    text = str(error).strip()
    return text.splitlines()[0] if text else repr(error)
