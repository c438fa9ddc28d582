"""
Utility functions for the migration toolkit.

This module provides identifier quoting, literal quoting for catalog text in
generated DDL, and small formatting helpers shared by the other modules.
Row values are never rendered here; exported data goes through psycopg2
adaptation in data_transfer.
"""

import re
from typing import Iterable, List


def quote_identifier(identifier: str) -> str:
    """
    Quote a PostgreSQL identifier safely.

    Always quotes and escapes identifiers so reserved words, mixed case and
    special characters survive the round trip to the target.

    Examples:
        >>> quote_identifier("users")
        '"users"'
        >>> quote_identifier('odd"name')
        '"odd""name"'
    """
    escaped = identifier.replace('"', '""')
    return f'"{escaped}"'


def qualified_name(schema_name: str, object_name: str) -> str:
    """
    Return a quoted ``"schema"."name"`` reference.

    Examples:
        >>> qualified_name("public", "users")
        '"public"."users"'
    """
    return f"{quote_identifier(schema_name)}.{quote_identifier(object_name)}"


def quote_role(role: str) -> str:
    """Quote a role name, leaving the PUBLIC pseudo-role bare."""
    if role.lower() == 'public':
        return 'public'
    return quote_identifier(role)


def quote_literal(value: str) -> str:
    """
    Quote catalog text (enum labels, regclass names) for generated DDL.

    Examples:
        >>> quote_literal("admin")
        "'admin'"
        >>> quote_literal("O'Brien")
        "'O''Brien'"

    Note:
        This is for names and labels read from the catalogs, NOT row data.
        For identifiers use quote_identifier().
    """
    # Escape single quotes by doubling them (SQL standard)
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


def strip_default_values(arguments: str) -> str:
    """
    Remove DEFAULT clauses from a function argument list.

    ``DROP FUNCTION`` only accepts the argument types, so the list produced
    by ``pg_get_function_arguments`` has to lose its defaults first.

    Examples:
        >>> strip_default_values("prefix text, limits integer DEFAULT 100")
        'prefix text, limits integer'
        >>> strip_default_values("")
        ''
    """
    if not arguments or not arguments.strip():
        return ''
    parts = [
        re.sub(r'\s+DEFAULT\s+.*$', '', part, flags=re.IGNORECASE | re.DOTALL).strip()
        for part in _split_arguments(arguments)
    ]
    return ', '.join(part for part in parts if part)


def _split_arguments(arguments: str) -> List[str]:
    """Split an argument list on top-level commas outside string literals."""
    parts = []
    depth = 0
    in_string = False
    current = ''
    for char in arguments:
        if char == "'":
            in_string = not in_string
        elif in_string:
            pass
        elif char in '([':
            depth += 1
        elif char in ')]':
            depth -= 1
        if char == ',' and depth == 0 and not in_string:
            parts.append(current)
            current = ''
            continue
        current += char
    if current.strip():
        parts.append(current)
    return parts


def truncate_string(s: str, max_length: int = 100, suffix: str = "...") -> str:
    """
    Truncate a string to a maximum length.

    Examples:
        >>> truncate_string("short")
        'short'
        >>> truncate_string("a" * 150, max_length=20)
        'aaaaaaaaaaaaaaaaa...'
    """
    if len(s) <= max_length:
        return s
    return s[:max_length - len(suffix)] + suffix


def statement_preview(statement: str, max_length: int = 60) -> str:
    """Single-line preview of a statement for log output."""
    return truncate_string(statement.replace('\n', ' ').strip(), max_length)


def format_bytes(num_bytes: float) -> str:
    """
    Format bytes into human-readable format.

    Examples:
        >>> format_bytes(0)
        '0 B'
        >>> format_bytes(1536)
        '1.5 KB'
        >>> format_bytes(1048576)
        '1.0 MB'
    """
    if num_bytes == 0:
        return '0 B'
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if num_bytes < 1024.0 or unit == 'TB':
            if unit == 'B':
                return f"{int(num_bytes)} B"
            return f"{num_bytes:.1f} {unit}"
        num_bytes /= 1024.0


def parse_csv_list(value: str, exclude: Iterable[str] = ()) -> List[str]:
    """
    Split a comma-separated setting into a clean list.

    Examples:
        >>> parse_csv_list("public, app ,,auth", exclude={"auth"})
        ['public', 'app']
    """
    excluded = set(exclude)
    items = []
    for item in (value or '').split(','):
        item = item.strip()
        if item and item not in excluded and item not in items:
            items.append(item)
    return items
