"""
SQL text helpers shared by the relational drivers and the postgres-sql
schema file driver: identifier quoting, CREATE TABLE rendering and parsing,
and the predicates used to split a table into parallel partitions.
"""

import re
import logging
from typing import List, Optional, Tuple

from dbtransit.core.errors import ConversionError
from dbtransit.core.locator import split_table_name
from dbtransit.core.schema_ir import NativeColumn, NativeTable, TableIR
from dbtransit.core.type_registry import PortableType

logger = logging.getLogger(__name__)

QUOTE_CHARS = {
    'postgres': '"',
    'redshift': '"',
    'sqlite': '"',
    'mysql': '`',
}


def quote_ident(name: str, dialect: str = 'postgres') -> str:
    quote = QUOTE_CHARS[dialect]
    return quote + name.replace(quote, quote * 2) + quote


def quote_table(table: str, dialect: str = 'postgres') -> str:
    """'public.users' -> '"public"."users"'"""
    schema, name = split_table_name(table)
    if schema is None:
        return quote_ident(name, dialect)
    return f"{quote_ident(schema, dialect)}.{quote_ident(name, dialect)}"


def column_list(names: List[str], dialect: str) -> str:
    return ', '.join(quote_ident(n, dialect) for n in names)


def create_table_sql(native: NativeTable, dialect: str, table_sql: Optional[str] = None,
                     unique_key: Optional[str] = None) -> str:
    """CREATE TABLE for a native table description; `unique_key` adds a UNIQUE constraint"""
    table_sql = table_sql or quote_table(native.name, dialect)
    lines = []
    for col in native.columns:
        line = f"{quote_ident(col.name, dialect)} {col.native_type}"
        if not col.nullable:
            line += " NOT NULL"
        lines.append(line)
    if native.primary_key:
        lines.append(f"PRIMARY KEY ({column_list(list(native.primary_key), dialect)})")
    if unique_key and tuple(native.primary_key) != (unique_key,):
        lines.append(f"UNIQUE ({quote_ident(unique_key, dialect)})")
    return f"CREATE TABLE {table_sql} (\n    " + ",\n    ".join(lines) + "\n)"


# =============================================================================
# Partitioning
# =============================================================================

def partition_key(schema: TableIR) -> Optional[str]:
    """The single integer primary key column, if the table has one"""
    if len(schema.primary_key) != 1:
        return None
    column = schema.column(schema.primary_key[0])
    if column is None or column.type.kind != PortableType.INTEGER:
        return None
    return column.name


def partition_predicate(key_sql: str, count: int, index: int, dialect: str) -> str:
    """True for rows of partition `index` out of `count` (non-negative modulo)"""
    if dialect == 'sqlite':
        return f"((({key_sql}) % {count}) + {count}) % {count} = {index}"
    return f"MOD(MOD({key_sql}, {count}) + {count}, {count}) = {index}"


def where_clause(*conditions: Optional[str]) -> str:
    parts = [f"({c})" for c in conditions if c]
    return f" WHERE {' AND '.join(parts)}" if parts else ""


# =============================================================================
# CREATE TABLE parsing (postgres dialect)
# =============================================================================

_LINE_COMMENT = re.compile(r'--[^\n]*')
_BLOCK_COMMENT = re.compile(r'/\*.*?\*/', re.S)
_CREATE_TABLE = re.compile(
    r'^CREATE\s+(?:(?:TEMP|TEMPORARY|UNLOGGED)\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?'
    r'(?P<name>(?:"(?:[^"]|"")*"|[\w$]+)(?:\s*\.\s*(?:"(?:[^"]|"")*"|[\w$]+))?)\s*'
    r'\((?P<body>.*)\)$',
    re.I | re.S,
)
_IDENT = re.compile(r'^\s*(?:"(?P<quoted>(?:[^"]|"")*)"|(?P<bare>[\w$]+))\s*(?P<rest>.*)$', re.S)
_CONSTRAINT_START = re.compile(
    r'\s+(?=(?:NOT\s+NULL|NULL|PRIMARY\s+KEY|DEFAULT|REFERENCES|UNIQUE|CHECK|COLLATE|'
    r'CONSTRAINT|GENERATED)\b)',
    re.I,
)
_TABLE_PRIMARY_KEY = re.compile(r'^(?:CONSTRAINT\s+\S+\s+)?PRIMARY\s+KEY\s*\((?P<cols>[^)]*)\)', re.I)
_TABLE_CONSTRAINT = re.compile(r'^(?:CONSTRAINT|UNIQUE|CHECK|FOREIGN\s+KEY|EXCLUDE)\b', re.I)


def split_top_level(text: str, separator: str) -> List[str]:
    """Split on `separator` outside parentheses and quotes"""
    parts, depth, quote, current = [], 0, None, []
    for ch in text:
        if quote:
            if ch == quote:
                quote = None
        elif ch in ('"', "'"):
            quote = ch
        elif ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
        elif ch == separator and depth == 0:
            parts.append(''.join(current))
            current = []
            continue
        current.append(ch)
    parts.append(''.join(current))
    return [p.strip() for p in parts if p.strip()]


def _unquote(match) -> str:
    if match.group('quoted') is not None:
        return match.group('quoted').replace('""', '"')
    return match.group('bare')


def parse_create_table(text: str) -> NativeTable:
    """Parse exactly one CREATE TABLE statement into a postgres NativeTable"""
    text = _BLOCK_COMMENT.sub(' ', _LINE_COMMENT.sub('', text))
    statements = [s for s in split_top_level(text, ';') if s.upper().startswith('CREATE')]
    tables = [s for s in statements if _CREATE_TABLE.match(s)]
    if len(tables) != 1:
        raise ConversionError(f"Expected exactly one CREATE TABLE statement, found {len(tables)}")
    match = _CREATE_TABLE.match(tables[0])

    schema, name = split_table_name(re.sub(r'\s*\.\s*', '.', match.group('name')))
    table_name = f"{schema}.{name}" if schema else name

    columns: List[NativeColumn] = []
    primary_key: Tuple[str, ...] = ()
    for item in split_top_level(match.group('body'), ','):
        pk = _TABLE_PRIMARY_KEY.match(item)
        if pk:
            primary_key = tuple(
                _unquote(_IDENT.match(c)) for c in split_top_level(pk.group('cols'), ',')
            )
            continue
        if _TABLE_CONSTRAINT.match(item):
            continue
        ident = _IDENT.match(item)
        if not ident or not ident.group('rest'):
            raise ConversionError(f"Cannot parse column definition {item!r}")
        column_name = _unquote(ident)
        pieces = _CONSTRAINT_START.split(ident.group('rest'), maxsplit=1)
        native_type = pieces[0].strip()
        constraints = pieces[1] if len(pieces) > 1 else ''
        nullable = not re.search(r'\bNOT\s+NULL\b', constraints, re.I)
        if re.search(r'\bPRIMARY\s+KEY\b', constraints, re.I):
            primary_key = (column_name,)
            nullable = False
        columns.append(NativeColumn(column_name, native_type, nullable))

    if not columns:
        raise ConversionError(f"CREATE TABLE {table_name} declares no columns")
    for key in primary_key:
        columns = [NativeColumn(c.name, c.native_type, False) if c.name == key else c for c in columns]
    return NativeTable('postgres', table_name, columns, primary_key)
