"""
SQL Statement Segmentation

Splits an SQL script into individually executable statements. Function and
DO-block bodies are usually dollar-quoted and contain semicolons of their
own, and exported INSERT values may hold multi-line text, so a plain split
on ';' would cut them apart. The segmenter tracks the open quote (a string
literal, a quoted identifier or a dollar-quote tag) across lines and only
treats a line-ending ';' as a statement boundary when nothing is open.

Known limitations: nested dollar quotes with different tags are not tracked
separately, and backslash-escaped quotes inside E'' strings are not
recognised. Literals written with standard_conforming_strings on double
their quotes instead, which is what psycopg2 emits.
"""

import re
from typing import Iterator, List, Optional

# '--' comment start, a single or double quote, or $$ / $tag$. A tag may not
# start with a digit, so $1 parameters never match.
QUOTE_TOKEN_PATTERN = re.compile(r"--|'|\"|\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")

# A '$' inside an identifier such as price$usd$ never opens a tag
IDENTIFIER_CHAR = re.compile(r'[A-Za-z0-9_$]')

LINE_COMMENT = '--'
STATEMENT_SEPARATOR = ';'


def _is_comment_or_blank(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith('--')


def _only_comments(statement: str) -> bool:
    return all(_is_comment_or_blank(line) for line in statement.splitlines())


def _scan_quotes(line: str, open_quote: Optional[str]) -> Optional[str]:
    """
    Return the quote still open after scanning ``line`` left to right.

    A doubled '' inside a literal closes and reopens it, which leaves the
    literal open as expected.
    """
    for match in QUOTE_TOKEN_PATTERN.finditer(line):
        token = match.group(0)
        if open_quote is None:
            if token == LINE_COMMENT:
                break
            start = match.start()
            if token.startswith('$') and start and IDENTIFIER_CHAR.match(line[start - 1]):
                continue
            open_quote = token
        elif token == open_quote:
            open_quote = None
    return open_quote


def iter_sql_statements(sql_text: str) -> Iterator[str]:
    """
    Yield statements from ``sql_text`` in order.

    Each statement keeps its internal formatting, is stripped of surrounding
    whitespace and loses its terminating ';'.
    """
    buffer: List[str] = []
    open_quote: Optional[str] = None

    for line in sql_text.splitlines():
        # Skip blank lines and comments until a statement starts
        if not buffer and _is_comment_or_blank(line):
            continue

        buffer.append(line)
        open_quote = _scan_quotes(line, open_quote)

        if open_quote is None and line.strip().endswith(STATEMENT_SEPARATOR):
            statement = '\n'.join(buffer).strip()
            buffer = []
            statement = statement[:-len(STATEMENT_SEPARATOR)].rstrip()
            if statement and not _only_comments(statement):
                yield statement

    # Trailing statement without a terminator
    remainder = '\n'.join(buffer).strip()
    if remainder and not _only_comments(remainder):
        yield remainder


def split_sql_statements(sql_text: str) -> List[str]:
    """
    Split an SQL script into executable statements.

    Args:
        sql_text: Full script text

    Returns:
        Ordered list of statements without trailing separators

    Examples:
        >>> split_sql_statements("INSERT INTO a VALUES (1);\\nINSERT INTO a VALUES (2);")
        ['INSERT INTO a VALUES (1)', 'INSERT INTO a VALUES (2)']
    """
    return list(iter_sql_statements(sql_text))
