"""Split a SQL script into individually executable statements.

DB-API drivers generally execute one statement per call, so a script body is
cut on top-level semicolons. Semicolons are not terminators inside:

- single-quoted strings ('' escapes, and backslash escapes for E'...')
- double-quoted and backtick-quoted identifiers
- -- line comments and /* */ block comments (nested, as in PostgreSQL)
- dollar-quoted bodies ($$ ... $$, $tag$ ... $tag$)
- CREATE TRIGGER ... BEGIN ... END bodies
"""

from __future__ import annotations

import re

_DOLLAR_TAG = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")
_TRIGGER_START = re.compile(
    r"^\s*CREATE\s+(?:TEMP\s+|TEMPORARY\s+)?TRIGGER\b", re.IGNORECASE
)
_BLOCK_KEYWORD = re.compile(r"\b(BEGIN|CASE|END)\b", re.IGNORECASE)


def split_statements(sql: str) -> list[str]:
    """Split ``sql`` into statements.

    Comments are kept with the statement they precede. Trailing semicolons are
    dropped, and chunks containing only whitespace or comments are discarded.

    Args:
        sql: Script body.

    Returns:
        Statements in source order.
    """
    statements: list[str] = []
    start = 0
    i = 0
    n = len(sql)

    while i < n:
        ch = sql[i]

        if ch == "-" and sql.startswith("--", i):
            newline = sql.find("\n", i)
            i = n if newline == -1 else newline + 1
        elif ch == "/" and sql.startswith("/*", i):
            i = _skip_block_comment(sql, i)
        elif ch == "'":
            escapes = i > 0 and sql[i - 1] in "eE" and not _is_word_char(sql, i - 2)
            i = _skip_quoted(sql, i, "'", backslash=escapes)
        elif ch in ('"', "`"):
            i = _skip_quoted(sql, i, ch, backslash=False)
        elif ch == "$" and not _is_word_char(sql, i - 1):
            match = _DOLLAR_TAG.match(sql, i)
            if match:
                close = sql.find(match.group(0), match.end())
                i = n if close == -1 else close + len(match.group(0))
            else:
                i += 1
        elif ch == ";":
            chunk = sql[start:i]
            if _inside_trigger_body(chunk):
                i += 1
                continue
            _append(statements, chunk)
            i += 1
            start = i
        else:
            i += 1

    _append(statements, sql[start:])
    return statements


def _is_word_char(sql: str, index: int) -> bool:
    return index >= 0 and (sql[index].isalnum() or sql[index] == "_")


def _skip_block_comment(sql: str, i: int) -> int:
    depth = 0
    n = len(sql)
    while i < n:
        if sql.startswith("/*", i):
            depth += 1
            i += 2
        elif sql.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    return n


def _skip_quoted(sql: str, i: int, quote: str, backslash: bool) -> int:
    n = len(sql)
    i += 1
    while i < n:
        ch = sql[i]
        if backslash and ch == "\\":
            i += 2
        elif ch == quote:
            if i + 1 < n and sql[i + 1] == quote:
                i += 2
            else:
                return i + 1
        else:
            i += 1
    return n


def _strip_comments(chunk: str, strings: bool = True) -> str:
    """Return ``chunk`` without comments, and without quoted text if ``strings`` is false."""
    out: list[str] = []
    i = 0
    n = len(chunk)
    while i < n:
        if chunk.startswith("--", i):
            newline = chunk.find("\n", i)
            i = n if newline == -1 else newline + 1
            out.append(" ")
        elif chunk.startswith("/*", i):
            i = _skip_block_comment(chunk, i)
            out.append(" ")
        elif chunk[i] in ("'", '"', "`"):
            end = _skip_quoted(chunk, i, chunk[i], backslash=False)
            out.append(chunk[i:end] if strings else " ")
            i = end
        else:
            out.append(chunk[i])
            i += 1
    return "".join(out)


def _inside_trigger_body(chunk: str) -> bool:
    text = _strip_comments(chunk, strings=False)
    if not _TRIGGER_START.match(text):
        return False

    # CASE ... END may appear inside the body; only the END matching BEGIN closes it
    depth = 0
    opened = False
    for keyword in _BLOCK_KEYWORD.findall(text):
        keyword = keyword.upper()
        if keyword == "END":
            depth -= 1
        else:
            depth += 1
            opened = opened or keyword == "BEGIN"
    return opened and depth > 0


def _append(statements: list[str], chunk: str) -> None:
    if _strip_comments(chunk).strip():
        statements.append(chunk.strip())
