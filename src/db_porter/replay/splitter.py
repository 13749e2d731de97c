"""Split a SQL script into individually executable statements.

A semicolon ends a statement only at the top level.  Inside a dollar-quoted
body (``$$ ... $$`` or ``$tag$ ... $tag$``), a single-quoted literal
(backslash escapes honored in ``E'...'`` strings), a double-quoted
identifier, or a comment it is just text.  Function bodies
therefore stay in one piece even though they contain semicolons.

Usage:
    from db_porter.replay.splitter import split_statements

    for statement in split_statements(Path("schema.sql").read_text()):
        ...
"""

import re

# $$ or $tag$ where tag follows identifier rules
_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")


def split_statements(script: str) -> list[str]:
    """Split *script* on top-level semicolons.

    Each returned statement is trimmed, keeps its terminating semicolon and
    has leading comments removed.  Pieces that contain only comments or
    whitespace are dropped.  Text after the last semicolon is returned as
    a final statement.

    Examples:
        >>> split_statements("SELECT 1; SELECT 2;")
        ['SELECT 1;', 'SELECT 2;']
        >>> split_statements("CREATE FUNCTION f() RETURNS int AS $$ SELECT 1; $$ LANGUAGE sql;")
        ['CREATE FUNCTION f() RETURNS int AS $$ SELECT 1; $$ LANGUAGE sql;']
    """
    statements: list[str] = []
    length = len(script)
    start = 0
    pos = 0
    dollar_tag: str | None = None

    while pos < length:
        if dollar_tag is not None:
            end = script.find(dollar_tag, pos)
            if end == -1:
                pos = length
            else:
                pos = end + len(dollar_tag)
                dollar_tag = None
            continue

        char = script[pos]

        if char == "$":
            match = _DOLLAR_TAG.match(script, pos)
            # "a$1$" is an identifier character run, not a quote
            if match and not (pos > 0 and _is_identifier_char(script[pos - 1])):
                dollar_tag = match.group(0)
                pos = match.end()
                continue
        elif char == "'":
            pos = _literal_end(script, pos, escapes=_is_escape_string(script, pos))
            continue
        elif char == '"':
            end = script.find(char, pos + 1)
            pos = length if end == -1 else end + 1
            continue
        elif script.startswith("--", pos):
            end = script.find("\n", pos)
            pos = length if end == -1 else end + 1
            continue
        elif script.startswith("/*", pos):
            end = script.find("*/", pos + 2)
            pos = length if end == -1 else end + 2
            continue
        elif char == ";":
            _append_statement(statements, script[start : pos + 1])
            start = pos + 1

        pos += 1

    _append_statement(statements, script[start:])
    return statements


def strip_leading_comments(text: str) -> str:
    """Remove whitespace and comments from the start of *text*."""
    while True:
        text = text.lstrip()
        if text.startswith("--"):
            newline = text.find("\n")
            text = "" if newline == -1 else text[newline + 1 :]
        elif text.startswith("/*"):
            end = text.find("*/")
            text = "" if end == -1 else text[end + 2 :]
        else:
            return text


def _append_statement(statements: list[str], text: str) -> None:
    statement = strip_leading_comments(text).rstrip()
    if statement and statement != ";":
        statements.append(statement)


def _is_identifier_char(char: str) -> bool:
    return char.isalnum() or char in "_$"


def _is_escape_string(script: str, quote: int) -> bool:
    """True when the quote at *quote* opens an E'...' literal."""
    if quote == 0 or script[quote - 1] not in "Ee":
        return False
    return quote < 2 or not _is_identifier_char(script[quote - 2])


def _literal_end(script: str, quote: int, escapes: bool) -> int:
    """Position just past the single-quoted literal opened at *quote*.

    A doubled quote is part of the literal.  In an escape string a
    backslash also hides the next character, so ``\\'`` does not close it.
    """
    pos = quote + 1
    length = len(script)
    while pos < length:
        char = script[pos]
        if escapes and char == "\\":
            pos += 2
            continue
        if char == "'":
            if script.startswith("''", pos):
                pos += 2
                continue
            return pos + 1
        pos += 1
    return length
