"""
PostgreSQL Type Comparison Module

Both sides of a sync are PostgreSQL, so there is nothing to translate; the
work here is to render catalog types in one canonical spelling, decide when
two spellings differ, and judge whether changing a target column from one
type to another can lose data (a narrowing change needs manual review).
"""

from typing import Optional, Tuple
import logging
import re

logger = logging.getLogger(__name__)


# information_schema.columns.udt_name -> canonical type name
UDT_TYPE_NAMES = {
    "int2": "smallint",
    "int4": "integer",
    "int8": "bigint",
    "float4": "real",
    "float8": "double precision",
    "numeric": "numeric",
    "bool": "boolean",
    "bpchar": "char",
    "varchar": "varchar",
    "text": "text",
    "timestamp": "timestamp",
    "timestamptz": "timestamptz",
    "date": "date",
    "time": "time",
    "timetz": "timetz",
    "interval": "interval",
    "uuid": "uuid",
    "json": "json",
    "jsonb": "jsonb",
    "bytea": "bytea",
    "inet": "inet",
    "cidr": "cidr",
    "macaddr": "macaddr",
    "money": "money",
    "xml": "xml",
    "tsvector": "tsvector",
    "oid": "oid",
}

# Alternative spellings seen in user input and format_type() output
TYPE_ALIASES = {
    "int": "integer",
    "int4": "integer",
    "serial": "integer",
    "int2": "smallint",
    "smallserial": "smallint",
    "int8": "bigint",
    "bigserial": "bigint",
    "float4": "real",
    "float8": "double precision",
    "float": "double precision",
    "decimal": "numeric",
    "bool": "boolean",
    "character varying": "varchar",
    "character": "char",
    "bpchar": "char",
    "timestamp without time zone": "timestamp",
    "timestamp with time zone": "timestamptz",
    "time without time zone": "time",
    "time with time zone": "timetz",
}

COMPATIBILITY_GROUPS = [
    {"smallint", "integer", "bigint"},
    {"real", "double precision", "numeric"},
    {"char", "varchar", "text"},
    {"timestamp", "timestamptz"},
    {"time", "timetz"},
    {"json", "jsonb"},
]

_INTEGER_RANK = {"smallint": 1, "integer": 2, "bigint": 3}
_FLOAT_RANK = {"real": 1, "double precision": 2}

_MODIFIER_PATTERN = re.compile(r'^(?P<base>[a-z ]+?)\s*\((?P<p>\d+)(?:\s*,\s*(?P<s>\d+))?\)$')

# Values used to back-fill existing rows when a NOT NULL column is added
TYPE_DEFAULTS = {
    "uuid": "gen_random_uuid()",
    "smallint": "0",
    "integer": "0",
    "bigint": "0",
    "real": "0",
    "double precision": "0",
    "numeric": "0",
    "money": "0",
    "boolean": "false",
    "char": "''",
    "varchar": "''",
    "text": "''",
    "timestamp": "NOW()",
    "timestamptz": "NOW()",
    "date": "CURRENT_DATE",
    "time": "CURRENT_TIME",
    "timetz": "CURRENT_TIME",
    "interval": "'0'::interval",
    "json": "'{}'::json",
    "jsonb": "'{}'::jsonb",
    "bytea": "''::bytea",
}


def format_column_type(
    udt_name: str,
    data_type: Optional[str] = None,
    character_maximum_length: Optional[int] = None,
    numeric_precision: Optional[int] = None,
    numeric_scale: Optional[int] = None,
) -> str:
    """
    Render an information_schema column as a canonical type string.

    Args:
        udt_name: Underlying type name (e.g. "int4", "_text", "varchar")
        data_type: information_schema data_type ("ARRAY", "USER-DEFINED", ...)
        character_maximum_length: Length modifier for char/varchar
        numeric_precision: Precision for numeric
        numeric_scale: Scale for numeric

    Returns:
        Canonical type (e.g. "integer", "varchar(255)", "numeric(10,2)", "text[]")
    """
    udt = (udt_name or '').lower()

    if udt.startswith('_') or (data_type or '').upper() == 'ARRAY':
        element = udt[1:] if udt.startswith('_') else udt
        return f"{UDT_TYPE_NAMES.get(element, element)}[]"

    base = UDT_TYPE_NAMES.get(udt, udt)

    if base in ("varchar", "char") and character_maximum_length:
        return f"{base}({character_maximum_length})"
    if base == "numeric" and numeric_precision:
        return f"numeric({numeric_precision},{numeric_scale or 0})"

    return base


def normalize_type(type_str: str) -> str:
    """
    Bring any spelling of a type to its canonical form.

    Examples:
        >>> normalize_type("CHARACTER VARYING(100)")
        'varchar(100)'
        >>> normalize_type("timestamp without time zone")
        'timestamp'
    """
    t = ' '.join((type_str or '').lower().split())

    if t.endswith('[]'):
        return normalize_type(t[:-2]) + '[]'

    match = _MODIFIER_PATTERN.match(t)
    if match:
        base = TYPE_ALIASES.get(match.group('base'), match.group('base'))
        if match.group('s') is not None:
            return f"{base}({match.group('p')},{match.group('s')})"
        if base == "numeric":
            return f"numeric({match.group('p')},0)"
        return f"{base}({match.group('p')})"

    return TYPE_ALIASES.get(t, t)


def split_type(type_str: str) -> Tuple[str, Optional[int], Optional[int], bool]:
    """Split a type into (base, precision/length, scale, is_array)."""
    t = normalize_type(type_str)
    is_array = t.endswith('[]')
    if is_array:
        t = t[:-2]
    match = _MODIFIER_PATTERN.match(t)
    if match:
        scale = int(match.group('s')) if match.group('s') is not None else None
        return match.group('base'), int(match.group('p')), scale, is_array
    return t, None, None, is_array


def types_equal(type_a: str, type_b: str) -> bool:
    return normalize_type(type_a) == normalize_type(type_b)


def are_types_compatible(source_type: str, target_type: str) -> bool:
    """Types are compatible when they share a base or a compatibility group."""
    base_a, _, _, array_a = split_type(source_type)
    base_b, _, _, array_b = split_type(target_type)

    if array_a != array_b:
        return False
    if base_a == base_b:
        return True

    return any(base_a in group and base_b in group for group in COMPATIBILITY_GROUPS)


def is_widening(from_type: str, to_type: str) -> bool:
    """
    Decide whether altering a column from ``from_type`` to ``to_type`` keeps every value.

    Args:
        from_type: The column's current type
        to_type: The type it would be altered to

    Returns:
        True for lossless changes (smallint -> integer, varchar(50) -> text,
        timestamp -> timestamptz, ...); False for narrowing or unrelated types
    """
    if types_equal(from_type, to_type):
        return True

    base_from, len_from, scale_from, array_from = split_type(from_type)
    base_to, len_to, scale_to, array_to = split_type(to_type)

    if array_from != array_to:
        return False

    if base_from in _INTEGER_RANK:
        if base_to in _INTEGER_RANK:
            return _INTEGER_RANK[base_to] >= _INTEGER_RANK[base_from]
        if base_to == "numeric":
            if len_to is None:
                return True
            digits = {"smallint": 5, "integer": 10, "bigint": 19}[base_from]
            return (len_to - (scale_to or 0)) >= digits
        return False

    if base_from in _FLOAT_RANK:
        if base_to in _FLOAT_RANK:
            return _FLOAT_RANK[base_to] >= _FLOAT_RANK[base_from]
        return base_to == "numeric" and len_to is None

    if base_from == "numeric":
        if base_to != "numeric":
            return False
        if len_to is None:
            return True
        if len_from is None:
            return False
        return (len_to - (scale_to or 0)) >= (len_from - (scale_from or 0)) and \
            (scale_to or 0) >= (scale_from or 0)

    if base_from in ("char", "varchar", "text"):
        if base_to == "text":
            return True
        if base_to == "varchar":
            if len_to is None:
                return True
            return len_from is not None and base_from != "text" and len_to >= len_from
        return False

    if base_from == "timestamp":
        return base_to == "timestamptz"
    if base_from == "time":
        return base_to == "timetz"
    if base_from in ("json", "jsonb"):
        return base_to in ("json", "jsonb")

    return False


def default_for_type(type_str: str) -> Optional[str]:
    """Back-fill expression for a NOT NULL column added to a populated table."""
    base, _, _, is_array = split_type(type_str)
    if is_array:
        return "'{}'"
    return TYPE_DEFAULTS.get(base)
