#!/usr/bin/env python3
"""
dbtransit SQLite Driver

Locator: ``sqlite:path/to/file.db#table``

Roles: source, destination, schema source/destination, count.

- Sources split into partitions on ``rowid`` and read each partition on its
  own connection in its own worker thread.
- Each destination stream owns one connection; every chunk is one
  transaction, so a chunk that failed with "database is locked" committed
  nothing and is safe to retry.
- Upsert deletes matching keys and inserts the chunk inside the same
  transaction.
"""

import os
import sqlite3
import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional

from dbtransit.core.driver_registry import (
    DestinationOptions, IfExists, IfExistsMode, RowStream, SourceOptions,
    TableWriterBase, ThreadWorker, iterate_in_thread,
)
from dbtransit.core.errors import FatalIOError, SchemaConflictError, TransientIOError
from dbtransit.core.locator import SqliteLocator
from dbtransit.core.schema_ir import (
    NativeColumn, NativeTable, TableIR, check_append_compatible, from_portable,
    require_upsert_key, to_portable,
)
from dbtransit.core.type_registry import DataType, PortableType
from dbtransit.core.values import Row, encode_row, from_text
from dbtransit.drivers.sql import (
    column_list, create_table_sql, partition_predicate, quote_ident, quote_table, where_clause,
)

logger = logging.getLogger(__name__)

DIALECT = 'sqlite'
FETCH_SIZE = 1000


def translate_error(e: Exception, locator: SqliteLocator, stream: Optional[int] = None) -> Exception:
    """Map a sqlite3 exception onto the dbtransit taxonomy"""
    message = f"SQLite error on {locator}: {e}"
    if isinstance(e, sqlite3.OperationalError) and ('locked' in str(e) or 'busy' in str(e)):
        return TransientIOError(message, locator=str(locator), stream=stream)
    return FatalIOError(message, locator=str(locator), stream=stream)


def connect(locator: SqliteLocator, create: bool = False, timeout: float = 30.0) -> sqlite3.Connection:
    if not create and not os.path.exists(locator.path):
        raise FatalIOError(f"SQLite database {locator.path} does not exist", locator=str(locator))
    try:
        return sqlite3.connect(locator.path, timeout=timeout)
    except sqlite3.Error as e:
        raise translate_error(e, locator) from e


def bind_value(dtype: DataType, text: Optional[str]) -> Any:
    """Canonical text -> a value sqlite3 can bind without adapters"""
    if text is None:
        return None
    if dtype.kind in (PortableType.INTEGER, PortableType.FLOAT, PortableType.BOOLEAN):
        value = from_text(dtype, text)
        return int(value) if dtype.kind == PortableType.BOOLEAN else value
    if dtype.kind == PortableType.BINARY:
        return from_text(dtype, text)
    return text


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?", (table,)
    ).fetchone()
    return row[0] > 0


def table_has_rows(conn: sqlite3.Connection, table: str) -> bool:
    return conn.execute(f"SELECT 1 FROM {quote_table(table, DIALECT)} LIMIT 1").fetchone() is not None


def describe_table(conn: sqlite3.Connection, table: str) -> NativeTable:
    rows = conn.execute(f"PRAGMA table_info({quote_ident(table, DIALECT)})").fetchall()
    if not rows:
        raise FatalIOError(f"SQLite table '{table}' does not exist")
    columns = []
    keyed = []
    for cid, name, declared, notnull, default, pk in rows:
        columns.append(NativeColumn(name, declared or '', not notnull and not pk))
        if pk:
            keyed.append((pk, name))
    primary_key = tuple(name for _, name in sorted(keyed))
    return NativeTable(DIALECT, table, columns, primary_key)


class SqliteDriver:
    """SQLite implementation of the source, destination and schema roles"""

    def __init__(self, credentials: Any = None):
        self.credentials = credentials

    # ----- schema -----

    def _read_schema_sync(self, locator: SqliteLocator) -> TableIR:
        conn = connect(locator)
        try:
            return to_portable(describe_table(conn, locator.table))
        except sqlite3.Error as e:
            raise translate_error(e, locator) from e
        finally:
            conn.close()

    async def read_schema(self, locator: SqliteLocator, args: Mapping[str, str]) -> TableIR:
        worker = ThreadWorker("dbtransit-sqlite")
        try:
            return await worker.run(self._read_schema_sync, locator)
        finally:
            worker.shutdown()

    async def write_schema(self, locator: SqliteLocator, options: DestinationOptions) -> List[str]:
        await self.prepare(locator, options)
        return [str(locator)]

    # ----- source -----

    async def count(self, locator: SqliteLocator, options: SourceOptions) -> int:
        def run():
            conn = connect(locator)
            try:
                rows = conn.execute(
                    f"SELECT COUNT(*) FROM {quote_table(locator.table, DIALECT)}{where_clause(options.where)}"
                ).fetchall()
            except sqlite3.Error as e:
                raise translate_error(e, locator) from e
            finally:
                conn.close()
            if len(rows) != 1:
                raise FatalIOError(f"COUNT(*) on {locator} returned {len(rows)} rows", locator=str(locator))
            return rows[0][0]

        worker = ThreadWorker("dbtransit-sqlite")
        try:
            return await worker.run(run)
        finally:
            worker.shutdown()

    async def open_streams(self, locator: SqliteLocator, options: SourceOptions) -> List[RowStream]:
        schema = options.schema
        partitions = max(1, options.max_streams)
        table_sql = quote_table(locator.table, DIALECT)
        select = f"SELECT {column_list(schema.column_names, DIALECT)} FROM {table_sql}"
        types = [c.type for c in schema.columns]

        def make_stream(index: int) -> RowStream:
            if partitions > 1:
                sql = select + where_clause(options.where, partition_predicate('rowid', partitions, index, DIALECT))
            else:
                sql = select + where_clause(options.where)
            sql += " ORDER BY rowid"

            def batches() -> Iterator[List[Row]]:
                conn = connect(locator)
                try:
                    cursor = conn.execute(sql)
                    while True:
                        rows = cursor.fetchmany(FETCH_SIZE)
                        if not rows:
                            break
                        yield [encode_row(types, row) for row in rows]
                except sqlite3.Error as e:
                    raise translate_error(e, locator, index) from e
                finally:
                    conn.close()

            return RowStream(index, f"{locator.table}[{index}/{partitions}]", lambda: iterate_in_thread(batches))

        return [make_stream(i) for i in range(partitions)]

    # ----- destination -----

    def check_destination(self, locator: SqliteLocator, if_exists: IfExists) -> None:
        pass

    def accepts_multiple_streams(self, locator: SqliteLocator) -> bool:
        return True

    def _prepare_sync(self, locator: SqliteLocator, options: DestinationOptions) -> TableIR:
        schema = options.schema
        mode = options.if_exists.mode
        native = from_portable(DIALECT, schema.renamed(locator.table), options.context)
        conn = connect(locator, create=True)
        try:
            with conn:
                if table_exists(conn, locator.table):
                    if mode == IfExistsMode.ERROR and table_has_rows(conn, locator.table):
                        raise SchemaConflictError(
                            f"Destination {locator} already exists and is not empty "
                            f"(use --if-exists=overwrite, append or upsert-on)", locator=str(locator))
                    if mode == IfExistsMode.OVERWRITE:
                        logger.info(f"Dropping existing table {locator}")
                        conn.execute(f"DROP TABLE {quote_table(locator.table, DIALECT)}")
                    else:
                        existing = to_portable(describe_table(conn, locator.table))
                        check_append_compatible(schema, existing, str(locator))
                        if mode == IfExistsMode.UPSERT:
                            require_upsert_key(existing, options.if_exists.key, str(locator))
                        return existing
                unique = options.if_exists.key if mode == IfExistsMode.UPSERT else None
                ddl = create_table_sql(native, DIALECT, quote_table(locator.table, DIALECT), unique)
                logger.debug(f"Creating {locator}: {ddl}")
                conn.execute(ddl)
                return schema
        except sqlite3.Error as e:
            raise translate_error(e, locator) from e
        finally:
            conn.close()

    async def prepare(self, locator: SqliteLocator, options: DestinationOptions) -> 'SqliteTableWriter':
        worker = ThreadWorker("dbtransit-sqlite")
        try:
            await worker.run(self._prepare_sync, locator, options)
        finally:
            worker.shutdown()
        return SqliteTableWriter(locator, options.schema, options.if_exists)


class SqliteTableWriter(TableWriterBase):
    """A prepared SQLite destination table"""

    def __init__(self, locator: SqliteLocator, schema: TableIR, if_exists: IfExists):
        super().__init__(locator)
        self.schema = schema
        self.if_exists = if_exists

    async def open_stream(self, index: int) -> 'SqliteStreamWriter':
        return SqliteStreamWriter(self.locator, self.schema, self.if_exists, index)

    async def finish(self) -> List[str]:
        return [str(self.locator)]


class SqliteStreamWriter:
    """One destination stream: its own connection on its own thread"""

    def __init__(self, locator: SqliteLocator, schema: TableIR, if_exists: IfExists, index: int):
        self.locator = locator
        self.schema = schema
        self.index = index
        self.key = if_exists.key if if_exists.mode == IfExistsMode.UPSERT else None
        self.types = [c.type for c in schema.columns]
        table_sql = quote_table(locator.table, DIALECT)
        placeholders = ', '.join('?' for _ in schema.columns)
        self.insert_sql = f"INSERT INTO {table_sql} ({column_list(schema.column_names, DIALECT)}) VALUES ({placeholders})"
        if self.key:
            self.key_index = schema.index_of(self.key)
            self.delete_sql = f"DELETE FROM {table_sql} WHERE {quote_ident(self.key, DIALECT)} = ?"
        self._worker = ThreadWorker(f"dbtransit-sqlite-{index}")
        self._conn: Optional[sqlite3.Connection] = None

    def _write_sync(self, rows: List[Row]):
        if self._conn is None:
            self._conn = connect(self.locator, create=True)
        if self.key:
            # newest row wins within a chunk
            latest: Dict[Optional[str], Row] = {}
            for row in rows:
                latest.pop(row[self.key_index], None)
                latest[row[self.key_index]] = row
            rows = list(latest.values())
        params = [tuple(bind_value(t, v) for t, v in zip(self.types, row)) for row in rows]
        try:
            with self._conn:
                if self.key:
                    key_type = self.types[self.key_index]
                    self._conn.executemany(self.delete_sql,
                                           [(bind_value(key_type, r[self.key_index]),) for r in rows])
                self._conn.executemany(self.insert_sql, params)
        except sqlite3.Error as e:
            raise translate_error(e, self.locator, self.index) from e

    async def write_chunk(self, rows: List[Row]) -> None:
        await self._worker.run(self._write_sync, rows)

    def _close_sync(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    async def close(self) -> None:
        try:
            await self._worker.run(self._close_sync)
        finally:
            self._worker.shutdown()
