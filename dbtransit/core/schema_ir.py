"""
Portable table schema (IR) and its conversion to and from native schemas.

A native schema is a table name plus (column name, native type string,
nullable) triples as a system reports or expects them; drivers translate
their own catalog formats (CREATE TABLE text, BigQuery JSON, information
schema rows) into NativeTable before calling to_portable.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from dbtransit.core.errors import ConversionError, SchemaConflictError
from dbtransit.core.type_registry import ConversionContext, DataType, TypeRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnIR:
    """Column definition in IR"""
    name: str
    type: DataType
    nullable: bool = True


@dataclass(frozen=True)
class TableIR:
    """Table definition in IR: ordered columns plus an optional primary key"""
    name: str
    columns: Tuple[ColumnIR, ...]
    primary_key: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'columns', tuple(self.columns))
        object.__setattr__(self, 'primary_key', tuple(self.primary_key))
        seen = set()
        for col in self.columns:
            # case-insensitive; mysql and bigquery fold identifier case
            if col.name.lower() in seen:
                raise ConversionError(f"Duplicate column '{col.name}' in table '{self.name}'", column=col.name)
            seen.add(col.name.lower())
        names = {col.name for col in self.columns}
        for key in self.primary_key:
            if key not in names:
                raise ConversionError(f"Primary key column '{key}' is not a column of '{self.name}'", column=key)

    @property
    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]

    def column(self, name: str) -> Optional[ColumnIR]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def index_of(self, name: str) -> int:
        return self.column_names.index(name)

    def renamed(self, name: str) -> 'TableIR':
        return TableIR(name, self.columns, self.primary_key)

    # ----- portable JSON form -----

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'columns': [
                {'name': c.name, 'data_type': str(c.type), 'is_nullable': c.nullable}
                for c in self.columns
            ],
            'primary_key': list(self.primary_key),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2) + "\n"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableIR':
        try:
            columns = [
                ColumnIR(c['name'], DataType.parse(c['data_type']), bool(c.get('is_nullable', True)))
                for c in data['columns']
            ]
            return cls(data['name'], columns, data.get('primary_key') or ())
        except (KeyError, TypeError) as e:
            raise ConversionError(f"Malformed portable schema: missing or invalid {e}") from e

    @classmethod
    def from_json(cls, text: str) -> 'TableIR':
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConversionError(f"Portable schema is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConversionError("Portable schema must be a JSON object")
        return cls.from_dict(data)


@dataclass(frozen=True)
class NativeColumn:
    name: str
    native_type: str
    nullable: bool = True


@dataclass(frozen=True)
class NativeTable:
    """A table as one system describes it"""
    system: str
    name: str
    columns: Tuple[NativeColumn, ...]
    primary_key: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'columns', tuple(self.columns))
        object.__setattr__(self, 'primary_key', tuple(self.primary_key))


def to_portable(native: NativeTable) -> TableIR:
    """Convert a native table description into the portable IR"""
    columns = [
        ColumnIR(col.name, TypeRegistry.to_portable(native.system, col.native_type, col.name), col.nullable)
        for col in native.columns
    ]
    return TableIR(native.name, columns, native.primary_key)


def from_portable(system: str, table: TableIR,
                  context: Optional[ConversionContext] = None) -> NativeTable:
    """Convert the portable IR into one system's native table description"""
    context = context or ConversionContext()
    columns = [
        NativeColumn(col.name, TypeRegistry.from_portable(system, col.type, col.name, context), col.nullable)
        for col in table.columns
    ]
    return NativeTable(system, table.name, columns, table.primary_key)


def check_append_compatible(source: TableIR, existing: TableIR, locator: str) -> None:
    """
    Rows shaped like `source` can be added to `existing`: every source column
    exists in the destination with the same portable kind, and destination
    columns missing from the source are nullable.
    """
    problems = []
    for col in source.columns:
        dest = existing.column(col.name)
        if dest is None:
            problems.append(f"column '{col.name}' missing from destination")
        elif dest.type.kind != col.type.kind:
            problems.append(f"column '{col.name}' is {dest.type} in destination but {col.type} in source")
    for dest in existing.columns:
        if source.column(dest.name) is None and not dest.nullable:
            problems.append(f"destination column '{dest.name}' is NOT NULL but absent from source")
    if problems:
        raise SchemaConflictError(
            f"Destination {locator} is incompatible: " + "; ".join(problems),
            locator=locator, details={'problems': problems},
        )


def require_upsert_key(table: TableIR, key: str, locator: str) -> None:
    if table.column(key) is None:
        raise SchemaConflictError(
            f"Upsert key '{key}' is not a column of {locator}",
            locator=locator, details={'key': key},
        )
