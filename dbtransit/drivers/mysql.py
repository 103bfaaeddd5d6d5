#!/usr/bin/env python3
"""
dbtransit MySQL Driver

Locator: ``mysql://[user[:password]@]host[:port]/database#table``. The
password falls back to MYSQL_PWD from the injected credentials.

Roles: source, destination, schema source/destination, count.

Sources stream through an unbuffered server-side cursor, partitioned with
``MOD(key, N)`` on an integer primary key. Destinations insert each chunk
in one transaction; upserts use ``ON DUPLICATE KEY UPDATE``, which applies
rows in order so the newest row of a chunk wins.
"""

import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional

import pymysql
import pymysql.cursors
from pymysql import MySQLError

from dbtransit.core.driver_registry import (
    DestinationOptions, IfExists, IfExistsMode, RowStream, SourceOptions,
    TableWriterBase, ThreadWorker, iterate_in_thread,
)
from dbtransit.core.errors import (
    AuthenticationError, CapabilityError, FatalIOError, SchemaConflictError, TransientIOError,
)
from dbtransit.core.locator import DatabaseLocator, sanitize_message
from dbtransit.core.schema_ir import (
    NativeColumn, NativeTable, TableIR, check_append_compatible, from_portable,
    require_upsert_key, to_portable,
)
from dbtransit.core.type_registry import DataType, PortableType
from dbtransit.core.values import Row, encode_row, from_text
from dbtransit.drivers.sql import (
    column_list, create_table_sql, partition_key, partition_predicate, quote_ident,
    quote_table, where_clause,
)

logger = logging.getLogger(__name__)

DIALECT = 'mysql'
FETCH_SIZE = 5000

# Server/client error numbers worth retrying: lock wait timeout, deadlock,
# can't connect, server gone away, lost connection
TRANSIENT_ERRNOS = {1205, 1213, 2003, 2006, 2013}
AUTH_ERRNOS = {1044, 1045, 1698}


def translate_error(e: Exception, locator: DatabaseLocator, stream: Optional[int] = None) -> Exception:
    """Map a pymysql exception onto the dbtransit taxonomy"""
    where = locator.redacted()
    errno = e.args[0] if e.args and isinstance(e.args[0], int) else None
    message = sanitize_message(f"mysql error on {where}: {e}")
    if errno in AUTH_ERRNOS:
        return AuthenticationError(message, scheme=locator.scheme)
    if errno in TRANSIENT_ERRNOS:
        return TransientIOError(message, locator=where, stream=stream)
    return FatalIOError(message, locator=where, stream=stream)


def bind_value(dtype: DataType, text: Optional[str]) -> Any:
    if text is None:
        return None
    value = from_text(dtype, text)
    if dtype.kind == PortableType.TIMESTAMP and getattr(value, 'tzinfo', None) is not None:
        # DATETIME has no zone; canonical text is already UTC
        return value.replace(tzinfo=None)
    return value


class MysqlDriver:
    """MySQL tables through pymysql"""

    def __init__(self, credentials: Any = None):
        self.credentials = credentials

    def connect(self, locator: DatabaseLocator, streaming: bool = False) -> Any:
        password = locator.password
        if password is None and self.credentials is not None:
            password = self.credentials.mysql_password
        params: Dict[str, Any] = {
            'host': locator.host.strip('[]'),
            'port': int(locator.port) if locator.port else 3306,
            'database': locator.database,
            'charset': 'utf8mb4',
            'autocommit': False,
        }
        if locator.user:
            params['user'] = locator.user
        if password is not None:
            params['password'] = password
        if streaming:
            params['cursorclass'] = pymysql.cursors.SSCursor
        try:
            return pymysql.connect(**params)
        except MySQLError as e:
            raise translate_error(e, locator) from e

    async def _call(self, locator: DatabaseLocator, func, *args) -> Any:
        def run():
            conn = self.connect(locator)
            try:
                result = func(conn, *args)
                conn.commit()
                return result
            except MySQLError as e:
                conn.rollback()
                raise translate_error(e, locator) from e
            finally:
                conn.close()

        worker = ThreadWorker("dbtransit-mysql")
        try:
            return await worker.run(run)
        finally:
            worker.shutdown()

    # ----- catalog -----

    @staticmethod
    def table_exists(conn: Any, locator: DatabaseLocator) -> bool:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) FROM information_schema.TABLES WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = %s",
                (locator.table,),
            )
            return cur.fetchone()[0] > 0

    @staticmethod
    def describe_table(conn: Any, locator: DatabaseLocator) -> NativeTable:
        with conn.cursor(pymysql.cursors.DictCursor) as cur:
            cur.execute(
                "SELECT * FROM information_schema.COLUMNS "
                "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = %s ORDER BY ORDINAL_POSITION",
                (locator.table,),
            )
            rows = cur.fetchall()
            cur.execute(
                "SELECT COLUMN_NAME FROM information_schema.KEY_COLUMN_USAGE "
                "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = %s AND CONSTRAINT_NAME = 'PRIMARY' "
                "ORDER BY ORDINAL_POSITION",
                (locator.table,),
            )
            primary_key = tuple(r['COLUMN_NAME'] for r in cur.fetchall())
        columns = []
        for row in rows:
            native = row['COLUMN_TYPE']
            if row.get('SRS_ID') is not None:
                native = f"{native} srid {row['SRS_ID']}"
            columns.append(NativeColumn(row['COLUMN_NAME'], native, row['IS_NULLABLE'] == 'YES'))
        return NativeTable(DIALECT, locator.table, columns, primary_key)

    @staticmethod
    def table_has_rows(conn: Any, locator: DatabaseLocator) -> bool:
        with conn.cursor() as cur:
            cur.execute(f"SELECT 1 FROM {quote_table(locator.table, DIALECT)} LIMIT 1")
            return cur.fetchone() is not None

    @staticmethod
    def has_unique_key(conn: Any, locator: DatabaseLocator, column: str) -> bool:
        """True when a single-column unique index (or primary key) covers `column`"""
        with conn.cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) FROM ("
                "SELECT INDEX_NAME FROM information_schema.STATISTICS "
                "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = %s AND NON_UNIQUE = 0 "
                "GROUP BY INDEX_NAME HAVING COUNT(*) = 1 AND MAX(COLUMN_NAME) = %s) u",
                (locator.table, column),
            )
            return cur.fetchone()[0] > 0

    def _read_schema(self, conn: Any, locator: DatabaseLocator) -> TableIR:
        if not self.table_exists(conn, locator):
            raise FatalIOError(f"Table {locator.redacted()} does not exist", locator=locator.redacted())
        return to_portable(self.describe_table(conn, locator))

    async def read_schema(self, locator: DatabaseLocator, args: Mapping[str, str]) -> TableIR:
        return await self._call(locator, self._read_schema, locator)

    async def write_schema(self, locator: DatabaseLocator, options: DestinationOptions) -> List[str]:
        await self._call(locator, self._prepare_table, locator, options)
        return [locator.redacted()]

    # ----- source -----

    def _count(self, conn: Any, locator: DatabaseLocator, where: Optional[str]) -> int:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM {quote_table(locator.table, DIALECT)}{where_clause(where)}")
            rows = cur.fetchall()
        if len(rows) != 1:
            raise FatalIOError(f"COUNT(*) on {locator.redacted()} returned {len(rows)} rows",
                               locator=locator.redacted())
        return int(rows[0][0])

    async def count(self, locator: DatabaseLocator, options: SourceOptions) -> int:
        return await self._call(locator, self._count, locator, options.where)

    async def open_streams(self, locator: DatabaseLocator, options: SourceOptions) -> List[RowStream]:
        schema = options.schema
        types = [c.type for c in schema.columns]
        expressions = []
        for col in schema.columns:
            quoted = quote_ident(col.name, DIALECT)
            if col.type.kind == PortableType.GEOMETRY:
                expressions.append(f"ST_AsGeoJSON({quoted}) AS {quoted}")
            else:
                expressions.append(quoted)
        select = f"SELECT {', '.join(expressions)} FROM {quote_table(locator.table, DIALECT)}"
        key = partition_key(schema)
        partitions = options.max_streams if key else 1

        def make_stream(index: int) -> RowStream:
            conditions = [options.where]
            if partitions > 1:
                conditions.append(partition_predicate(quote_ident(key, DIALECT), partitions, index, DIALECT))
            sql = select + where_clause(*conditions)
            if key:
                sql += f" ORDER BY {quote_ident(key, DIALECT)}"

            def batches() -> Iterator[List[Row]]:
                conn = self.connect(locator, streaming=True)
                try:
                    with conn.cursor() as cur:
                        cur.execute(sql)
                        while True:
                            rows = cur.fetchmany(FETCH_SIZE)
                            if not rows:
                                break
                            yield [encode_row(types, row) for row in rows]
                except MySQLError as e:
                    raise translate_error(e, locator, index) from e
                finally:
                    conn.close()

            return RowStream(index, f"{locator.table}[{index}/{partitions}]", lambda: iterate_in_thread(batches))

        return [make_stream(i) for i in range(partitions)]

    # ----- destination -----

    def check_destination(self, locator: DatabaseLocator, if_exists: IfExists) -> None:
        pass

    def accepts_multiple_streams(self, locator: DatabaseLocator) -> bool:
        return True

    def _prepare_table(self, conn: Any, locator: DatabaseLocator, options: DestinationOptions) -> None:
        mode = options.if_exists.mode
        native = from_portable(DIALECT, options.schema.renamed(locator.table), options.context)
        table_sql = quote_table(locator.table, DIALECT)
        with conn.cursor() as cur:
            if self.table_exists(conn, locator):
                if mode == IfExistsMode.ERROR and self.table_has_rows(conn, locator):
                    raise SchemaConflictError(
                        f"Destination {locator.redacted()} already exists and is not empty "
                        f"(use --if-exists=overwrite, append or upsert-on)",
                        locator=locator.redacted())
                if mode == IfExistsMode.OVERWRITE:
                    logger.info(f"Dropping existing table {locator.redacted()}")
                    cur.execute(f"DROP TABLE {table_sql}")
                else:
                    existing = to_portable(self.describe_table(conn, locator))
                    check_append_compatible(options.schema, existing, locator.redacted())
                    if mode == IfExistsMode.UPSERT:
                        require_upsert_key(existing, options.if_exists.key, locator.redacted())
                        if not self.has_unique_key(conn, locator, options.if_exists.key):
                            # ON DUPLICATE KEY UPDATE only matches unique indexes
                            raise CapabilityError(
                                f"Cannot upsert into {locator.redacted()}: column '{options.if_exists.key}' "
                                f"has no unique index or primary key",
                                scheme=locator.scheme, capability="upsert")
                    return
            unique = options.if_exists.key if mode == IfExistsMode.UPSERT else None
            ddl = create_table_sql(native, DIALECT, table_sql, unique)
            logger.debug(f"Creating {locator.redacted()}: {ddl}")
            cur.execute(ddl)

    async def prepare(self, locator: DatabaseLocator, options: DestinationOptions) -> 'MysqlTableWriter':
        await self._call(locator, self._prepare_table, locator, options)
        return MysqlTableWriter(self, locator, options.schema, options.if_exists)


class MysqlTableWriter(TableWriterBase):
    """A prepared MySQL destination table"""

    def __init__(self, driver: MysqlDriver, locator: DatabaseLocator, schema: TableIR, if_exists: IfExists):
        super().__init__(locator)
        self.driver = driver
        self.schema = schema
        self.if_exists = if_exists

    async def open_stream(self, index: int) -> 'MysqlStreamWriter':
        return MysqlStreamWriter(self, index)


class MysqlStreamWriter:
    """One destination stream; each chunk is one INSERT transaction"""

    def __init__(self, table: MysqlTableWriter, index: int):
        self.table = table
        self.index = index
        self.locator = table.locator
        schema = table.schema
        self.types = [c.type for c in schema.columns]
        placeholders = []
        for col in schema.columns:
            if col.type.kind == PortableType.GEOMETRY:
                srid = f", 1, {col.type.srid}" if col.type.srid is not None else ""
                placeholders.append(f"ST_GeomFromGeoJSON(%s{srid})")
            else:
                placeholders.append("%s")
        self.sql = (f"INSERT INTO {quote_table(self.locator.table, DIALECT)} "
                    f"({column_list(schema.column_names, DIALECT)}) VALUES ({', '.join(placeholders)})")
        if table.if_exists.mode == IfExistsMode.UPSERT:
            updates = [f"{quote_ident(n, DIALECT)} = VALUES({quote_ident(n, DIALECT)})"
                       for n in schema.column_names if n != table.if_exists.key]
            if updates:
                self.sql += f" ON DUPLICATE KEY UPDATE {', '.join(updates)}"
            else:
                self.sql = self.sql.replace("INSERT INTO", "INSERT IGNORE INTO", 1)
        self._worker = ThreadWorker(f"dbtransit-mysql-{index}")
        self._conn = None

    def _write_sync(self, rows: List[Row]):
        if self._conn is None:
            self._conn = self.table.driver.connect(self.locator)
        params = [tuple(bind_value(t, v) for t, v in zip(self.types, row)) for row in rows]
        try:
            with self._conn.cursor() as cur:
                cur.executemany(self.sql, params)
            self._conn.commit()
        except MySQLError as e:
            error = translate_error(e, self.locator, self.index)
            self._reset()
            raise error from e

    def _reset(self):
        if self._conn is not None:
            try:
                self._conn.close()
            except MySQLError as e:
                logger.debug(f"Closing connection for stream {self.index} failed: {e}")
        self._conn = None

    async def write_chunk(self, rows: List[Row]) -> None:
        await self._worker.run(self._write_sync, rows)

    async def close(self) -> None:
        try:
            await self._worker.run(self._reset)
        finally:
            self._worker.shutdown()
