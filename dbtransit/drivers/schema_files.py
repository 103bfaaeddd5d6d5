"""
Schema-only file drivers.

- ``postgres-sql:path.sql``: a PostgreSQL ``CREATE TABLE`` statement
- ``bigquery-schema:path.json``: a BigQuery JSON schema (list of fields)
- ``portable-schema:path.json``: the portable schema as JSON

The path ``-`` means stdin (reading) or stdout (writing). If-Exists for
schema files: ``error`` refuses a non-empty existing file, ``overwrite``
replaces it and ``append`` is not supported.
"""

import os
import re
import sys
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, TextIO

from dbtransit.core.driver_registry import DestinationOptions, IfExists, IfExistsMode
from dbtransit.core.errors import (
    CapabilityError, ConversionError, FatalIOError, SchemaConflictError, UnsupportedTypeError,
)
from dbtransit.core.locator import FileLocator
from dbtransit.core.schema_ir import NativeColumn, NativeTable, TableIR, from_portable, to_portable
from dbtransit.drivers.sql import create_table_sql, parse_create_table, quote_table

logger = logging.getLogger(__name__)


def _default_name(locator: FileLocator) -> str:
    if locator.is_stdio:
        return 'data'
    return os.path.splitext(os.path.basename(locator.path))[0] or 'data'


class SchemaFileDriver:
    """Reads and writes one schema document; subclasses supply the format"""

    def __init__(self, credentials: Any = None, stdin: Optional[TextIO] = None,
                 stdout: Optional[TextIO] = None):
        self.credentials = credentials
        self.stdin = stdin
        self.stdout = stdout

    def read_text(self, locator: FileLocator) -> str:
        if locator.is_stdio:
            return (self.stdin or sys.stdin).read()
        try:
            with open(locator.path, 'r', encoding='utf-8') as f:
                return f.read()
        except OSError as e:
            raise FatalIOError(f"Cannot read {locator}: {e}", locator=str(locator)) from e

    def write_text(self, locator: FileLocator, text: str, if_exists: IfExists) -> List[str]:
        if if_exists.mode not in (IfExistsMode.ERROR, IfExistsMode.OVERWRITE):
            raise CapabilityError(f"{locator.scheme} files support --if-exists=error or overwrite only",
                                  scheme=locator.scheme, capability=f"if_exists:{if_exists.mode.value}")
        if locator.is_stdio:
            out = self.stdout or sys.stdout
            out.write(text)
            out.flush()
            return [str(locator)]
        if if_exists.mode == IfExistsMode.ERROR and os.path.exists(locator.path) \
                and os.path.getsize(locator.path) > 0:
            raise SchemaConflictError(f"Destination {locator} already exists", locator=str(locator))
        try:
            parent = os.path.dirname(locator.path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(locator.path, 'w', encoding='utf-8') as f:
                f.write(text)
        except OSError as e:
            raise FatalIOError(f"Cannot write {locator}: {e}", locator=str(locator)) from e
        logger.info(f"Wrote schema to {locator}")
        return [str(locator)]

    def parse(self, text: str, locator: FileLocator) -> TableIR:
        raise NotImplementedError

    def render(self, options: DestinationOptions) -> str:
        raise NotImplementedError

    async def read_schema(self, locator: FileLocator, args: Mapping[str, str]) -> TableIR:
        return self.parse(self.read_text(locator), locator)

    async def write_schema(self, locator: FileLocator, options: DestinationOptions) -> List[str]:
        return self.write_text(locator, self.render(options), options.if_exists)


class PostgresSqlDriver(SchemaFileDriver):
    """``CREATE TABLE`` files"""

    def parse(self, text: str, locator: FileLocator) -> TableIR:
        return to_portable(parse_create_table(text))

    def render(self, options: DestinationOptions) -> str:
        native = from_portable('postgres', options.schema, options.context)
        return create_table_sql(native, 'postgres', quote_table(options.schema.name)) + ";\n"


# =============================================================================
# BigQuery JSON schema
# =============================================================================

_BQ_PARAMS = re.compile(r'^\s*([A-Za-z0-9_]+)\s*(?:\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\))?\s*$')


def native_from_fields(name: str, fields: List[Dict[str, Any]]) -> NativeTable:
    """BigQuery API field dicts -> NativeTable; nested and repeated fields are rejected"""
    columns = []
    for field in fields:
        try:
            column = field['name']
            field_type = str(field['type']).upper()
        except (KeyError, TypeError) as e:
            raise ConversionError(f"Malformed BigQuery schema field {field!r}") from e
        mode = str(field.get('mode') or 'NULLABLE').upper()
        if mode == 'REPEATED' or field_type in ('RECORD', 'STRUCT'):
            raise UnsupportedTypeError(
                f"Unsupported bigquery type '{mode} {field_type}' for column '{column}'",
                column=column, native_type=f"{mode} {field_type}", system='bigquery',
            )
        native = field_type
        if field.get('precision') is not None:
            native += f"({field['precision']}, {field.get('scale') or 0})"
        columns.append(NativeColumn(column, native, mode != 'REQUIRED'))
    return NativeTable('bigquery', name, columns)


def fields_from_native(native: NativeTable) -> List[Dict[str, Any]]:
    fields = []
    for col in native.columns:
        match = _BQ_PARAMS.match(col.native_type)
        if not match:
            raise ConversionError(f"Cannot express {col.native_type!r} as a BigQuery field", column=col.name)
        field: Dict[str, Any] = {
            'name': col.name,
            'type': match.group(1).upper(),
            'mode': 'NULLABLE' if col.nullable else 'REQUIRED',
        }
        if match.group(2):
            field['precision'] = match.group(2)
            field['scale'] = match.group(3) or '0'
        fields.append(field)
    return fields


class BigQuerySchemaDriver(SchemaFileDriver):
    """BigQuery JSON schema files"""

    def parse(self, text: str, locator: FileLocator) -> TableIR:
        try:
            fields = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConversionError(f"{locator} is not valid JSON: {e}") from e
        if isinstance(fields, dict):
            fields = fields.get('fields', fields.get('schema', {}).get('fields'))
        if not isinstance(fields, list):
            raise ConversionError(f"{locator} must hold a list of BigQuery fields")
        return to_portable(native_from_fields(_default_name(locator), fields))

    def render(self, options: DestinationOptions) -> str:
        native = from_portable('bigquery', options.schema, options.context)
        return json.dumps(fields_from_native(native), indent=2) + "\n"


class PortableSchemaDriver(SchemaFileDriver):
    """The portable schema JSON"""

    def parse(self, text: str, locator: FileLocator) -> TableIR:
        return TableIR.from_json(text)

    def render(self, options: DestinationOptions) -> str:
        return options.schema.to_json()
