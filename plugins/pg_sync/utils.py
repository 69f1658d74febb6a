"""
Utility functions for the sync pipeline.

This module provides identifier validation and quoting for generated DDL,
literal quoting for DO blocks, table pattern matching and formatting helpers
for log lines.
"""

import fnmatch
import re
from typing import Any, Iterable

# PostgreSQL truncates identifiers at NAMEDATALEN - 1 bytes
MAX_IDENTIFIER_LENGTH = 63

_BARE_IDENTIFIER = re.compile(r'^[a-z_][a-z0-9_$]*$')

# Reserved words that must always be quoted when used as identifiers
RESERVED_WORDS = frozenset({
    'all', 'analyse', 'analyze', 'and', 'any', 'array', 'as', 'asc',
    'asymmetric', 'both', 'case', 'cast', 'check', 'collate', 'column',
    'constraint', 'create', 'current_catalog', 'current_date', 'current_role',
    'current_time', 'current_timestamp', 'current_user', 'default',
    'deferrable', 'desc', 'distinct', 'do', 'else', 'end', 'except', 'false',
    'fetch', 'for', 'foreign', 'from', 'grant', 'group', 'having', 'in',
    'initially', 'intersect', 'into', 'lateral', 'leading', 'limit',
    'localtime', 'localtimestamp', 'not', 'null', 'offset', 'on', 'only', 'or',
    'order', 'placing', 'primary', 'references', 'returning', 'select',
    'session_user', 'some', 'symmetric', 'table', 'then', 'to', 'trailing',
    'true', 'union', 'unique', 'user', 'using', 'variadic', 'when', 'where',
    'window', 'with',
})


def validate_sql_identifier(identifier: str, identifier_type: str = "identifier") -> str:
    """
    Validate a table or column name supplied by a caller.

    Args:
        identifier: The identifier to validate
        identifier_type: Type description for error messages (e.g., "table name")

    Returns:
        The validated identifier (unchanged if valid)

    Raises:
        ValueError: If the identifier is empty, too long or has unsafe characters

    Examples:
        >>> validate_sql_identifier("users")
        'users'
        >>> validate_sql_identifier("drop; --")  # doctest: +SKIP
        ValueError: Invalid identifier 'drop; --': ...
    """
    if not identifier:
        raise ValueError(f"Invalid {identifier_type}: cannot be empty")

    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Invalid {identifier_type}: exceeds maximum length of {MAX_IDENTIFIER_LENGTH} "
            f"characters (got {len(identifier)} characters)"
        )

    if not re.match(r'^[a-zA-Z_][a-zA-Z0-9_$]*$', identifier):
        raise ValueError(
            f"Invalid {identifier_type} '{identifier}': must start with letter or underscore "
            "and contain only alphanumeric characters, underscores and dollar signs"
        )

    return identifier


def quote_identifier(name: str) -> str:
    """
    Quote an identifier for generated DDL, only where PostgreSQL requires it.

    Lower-case names that are not reserved words are emitted bare so that
    remediation scripts stay readable; everything else is double-quoted with
    embedded quotes doubled.

    Examples:
        >>> quote_identifier("last_login")
        'last_login'
        >>> quote_identifier("user")
        '"user"'
        >>> quote_identifier("CamelCase")
        '"CamelCase"'
    """
    if _BARE_IDENTIFIER.match(name) and name not in RESERVED_WORDS:
        return name
    return '"' + name.replace('"', '""') + '"'


def quote_sql_literal(value: Any) -> str:
    """
    Quote a value as a SQL literal for use inside generated DO blocks.

    Examples:
        >>> quote_sql_literal(123)
        '123'
        >>> quote_sql_literal("O'Brien")
        "'O''Brien'"
    """
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, int):
        return str(value)

    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


def matches_any_pattern(name: str, patterns: Iterable[str]) -> bool:
    """Check a table name against shell-style wildcards (case-insensitive)."""
    lowered = name.lower()
    return any(fnmatch.fnmatchcase(lowered, p.lower()) for p in patterns if p)


def format_bytes(num_bytes: float) -> str:
    """
    Format bytes into human-readable format.

    Examples:
        >>> format_bytes(1536)
        '1.5 KB'
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if num_bytes < 1024.0 or unit == 'TB':
            return f"{num_bytes:.1f} {unit}"
        num_bytes /= 1024.0
    return f"{num_bytes:.1f} PB"


def truncate_string(s: str, max_length: int = 100, suffix: str = "...") -> str:
    """Truncate a string to a maximum length (including suffix)."""
    if len(s) <= max_length:
        return s
    return s[:max_length - len(suffix)] + suffix
