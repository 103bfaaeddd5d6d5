#!/usr/bin/env python3
"""
dbtransit PostgreSQL Driver

Locator: ``postgres://[user[:password]@]host[:port]/database[?params]#[schema.]table``
(``postgresql://`` is accepted as an alias). Query parameters are passed to
libpq unchanged, e.g. ``?sslmode=require``. The password falls back to
PGPASSWORD from the injected credentials.

Roles: source, destination, schema source/destination, count.

- Sources with a single integer primary key are split into ``max_streams``
  partitions with ``MOD(key, N)``; each partition is read through a
  server-side cursor on its own connection.
- Destinations load every chunk in one transaction with ``COPY ... FROM
  STDIN``. Geometry columns and upserts go through a per-stream temporary
  table of text columns and an ``INSERT ... SELECT`` that casts each column.
- Upsert uses ``INSERT ... SELECT DISTINCT ON (key) ... ON CONFLICT (key)
  DO UPDATE`` so the newest row of a chunk wins.
"""

import io
import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl

import psycopg2

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
from dbtransit.core.type_registry import PortableType
from dbtransit.core.values import Row, csv_line, encode_row
from dbtransit.drivers.sql import (
    column_list, create_table_sql, partition_key, partition_predicate, quote_ident,
    quote_table, where_clause,
)

logger = logging.getLogger(__name__)

FETCH_SIZE = 5000

# SQLSTATE classes/codes worth retrying
TRANSIENT_SQLSTATES = {'40001', '40P01', '57P01', '57P02', '57P03', '55P03'}
TRANSIENT_CLASSES = {'08', '53'}
AUTH_SQLSTATES = {'28000', '28P01'}


def translate_error(e: Exception, locator: DatabaseLocator, stream: Optional[int] = None) -> Exception:
    """Map a psycopg2 exception onto the dbtransit taxonomy"""
    where = locator.redacted()
    code = getattr(e, 'pgcode', None) or ''
    message = sanitize_message(f"{locator.scheme} error on {where}: {str(e).strip()}")
    if code in AUTH_SQLSTATES or (not code and 'authentication' in str(e).lower()):
        return AuthenticationError(message, scheme=locator.scheme)
    if code in TRANSIENT_SQLSTATES or code[:2] in TRANSIENT_CLASSES:
        return TransientIOError(message, locator=where, stream=stream)
    if isinstance(e, psycopg2.OperationalError) and not code:
        # connection refused / dropped before any statement ran
        return TransientIOError(message, locator=where, stream=stream)
    return FatalIOError(message, locator=where, stream=stream)


class PostgresDriver:
    """PostgreSQL-protocol databases; `dialect` selects type tables and SQL quirks"""

    dialect = 'postgres'
    default_port = 5432
    # ON CONFLICT needs a unique index on the upsert key
    upsert_needs_unique_key = True

    def __init__(self, credentials: Any = None):
        self.credentials = credentials

    # ----- connections -----

    def connection_params(self, locator: DatabaseLocator) -> Dict[str, Any]:
        params: Dict[str, Any] = dict(parse_qsl(locator.params or ''))
        params.update({
            'host': locator.host.strip('[]'),
            'port': int(locator.port) if locator.port else self.default_port,
            'dbname': locator.database,
            'application_name': params.get('application_name', 'dbtransit'),
        })
        if locator.user:
            params['user'] = locator.user
        password = locator.password
        if password is None and self.credentials is not None:
            password = self.credentials.pg_password
        if password is not None:
            params['password'] = password
        return params

    def connect(self, locator: DatabaseLocator) -> Any:
        try:
            return psycopg2.connect(**self.connection_params(locator))
        except psycopg2.Error as e:
            raise translate_error(e, locator) from e

    async def _call(self, locator: DatabaseLocator, func, *args) -> Any:
        """Run `func(conn, *args)` on a fresh connection in a worker thread"""
        def run():
            conn = self.connect(locator)
            try:
                result = func(conn, *args)
                conn.commit()
                return result
            except psycopg2.Error as e:
                conn.rollback()
                raise translate_error(e, locator) from e
            finally:
                conn.close()

        worker = ThreadWorker(f"dbtransit-{self.dialect}")
        try:
            return await worker.run(run)
        finally:
            worker.shutdown()

    # ----- catalog -----

    def table_exists(self, conn: Any, locator: DatabaseLocator) -> bool:
        schema, table = locator.table_parts
        with conn.cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) FROM information_schema.tables "
                "WHERE table_schema = COALESCE(%s, current_schema()) AND table_name = %s",
                (schema, table),
            )
            return cur.fetchone()[0] > 0

    def table_has_rows(self, conn: Any, locator: DatabaseLocator) -> bool:
        with conn.cursor() as cur:
            cur.execute(f"SELECT 1 FROM {quote_table(locator.table, self.dialect)} LIMIT 1")
            return cur.fetchone() is not None

    def has_unique_key(self, conn: Any, locator: DatabaseLocator, column: str) -> bool:
        """True when a single-column unique index (or primary key) covers `column`"""
        with conn.cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) FROM pg_catalog.pg_index i "
                "JOIN pg_catalog.pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = i.indkey[0] "
                "WHERE i.indrelid = %s::regclass AND i.indisunique AND i.indnkeyatts = 1 "
                "AND i.indpred IS NULL AND a.attname = %s",
                (quote_table(locator.table, self.dialect), column),
            )
            return cur.fetchone()[0] > 0

    def describe_table(self, conn: Any, locator: DatabaseLocator) -> NativeTable:
        relation = quote_table(locator.table, self.dialect)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT a.attnum, a.attname, format_type(a.atttypid, a.atttypmod), a.attnotnull "
                "FROM pg_catalog.pg_attribute a "
                "WHERE a.attrelid = %s::regclass AND a.attnum > 0 AND NOT a.attisdropped "
                "ORDER BY a.attnum",
                (relation,),
            )
            attributes = cur.fetchall()
            cur.execute(
                "SELECT i.indkey FROM pg_catalog.pg_index i WHERE i.indrelid = %s::regclass AND i.indisprimary",
                (relation,),
            )
            index = cur.fetchone()
        names = {attnum: name for attnum, name, _, _ in attributes}
        primary_key: Tuple[str, ...] = ()
        if index:
            keys = index[0] if isinstance(index[0], (list, tuple)) else str(index[0]).split()
            primary_key = tuple(names[int(k)] for k in keys if int(k) in names)
        columns = [NativeColumn(name, native, not notnull) for _, name, native, notnull in attributes]
        return NativeTable(self.dialect, locator.table, columns, primary_key)

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
            cur.execute(f"SELECT COUNT(*) FROM {quote_table(locator.table, self.dialect)}{where_clause(where)}")
            rows = cur.fetchall()
        if len(rows) != 1:
            raise FatalIOError(f"COUNT(*) on {locator.redacted()} returned {len(rows)} rows",
                               locator=locator.redacted())
        return int(rows[0][0])

    async def count(self, locator: DatabaseLocator, options: SourceOptions) -> int:
        return await self._call(locator, self._count, locator, options.where)

    def select_expression(self, name: str, column_type) -> str:
        quoted = quote_ident(name, self.dialect)
        if column_type.kind == PortableType.GEOMETRY:
            return f"ST_AsGeoJSON({quoted}) AS {quoted}"
        return quoted

    async def open_streams(self, locator: DatabaseLocator, options: SourceOptions) -> List[RowStream]:
        schema = options.schema
        types = [c.type for c in schema.columns]
        select = "SELECT " + ", ".join(self.select_expression(c.name, c.type) for c in schema.columns)
        select += f" FROM {quote_table(locator.table, self.dialect)}"
        key = partition_key(schema)
        partitions = options.max_streams if key else 1
        if key is None and options.max_streams > 1:
            logger.info(f"{locator.redacted()} has no integer primary key; reading as one stream")

        def make_stream(index: int) -> RowStream:
            if partitions > 1:
                key_sql = quote_ident(key, self.dialect)
                sql = select + where_clause(options.where, partition_predicate(key_sql, partitions, index, self.dialect))
                sql += f" ORDER BY {key_sql}"
            else:
                sql = select + where_clause(options.where)
                if key:
                    sql += f" ORDER BY {quote_ident(key, self.dialect)}"

            def batches() -> Iterator[List[Row]]:
                conn = self.connect(locator)
                try:
                    with conn.cursor(name=f"dbtransit_stream_{index}") as cur:
                        cur.itersize = FETCH_SIZE
                        cur.execute(sql)
                        while True:
                            rows = cur.fetchmany(FETCH_SIZE)
                            if not rows:
                                break
                            yield [encode_row(types, row) for row in rows]
                    conn.rollback()
                except psycopg2.Error as e:
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

    def _prepare_table(self, conn: Any, locator: DatabaseLocator, options: DestinationOptions) -> NativeTable:
        """Apply the If-Exists policy; returns the native description rows are cast to"""
        mode = options.if_exists.mode
        native = from_portable(self.dialect, options.schema.renamed(locator.table), options.context)
        table_sql = quote_table(locator.table, self.dialect)
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
                        if self.upsert_needs_unique_key:
                            self.require_unique_key(conn, locator, options.if_exists.key)
                    return native
            unique = options.if_exists.key if mode == IfExistsMode.UPSERT else None
            ddl = create_table_sql(native, self.dialect, table_sql, unique)
            logger.debug(f"Creating {locator.redacted()}: {ddl}")
            cur.execute(ddl)
        return native

    def require_unique_key(self, conn: Any, locator: DatabaseLocator, key: str):
        if not self.has_unique_key(conn, locator, key):
            raise CapabilityError(
                f"Cannot upsert into {locator.redacted()}: column '{key}' has no unique index or primary key",
                scheme=locator.scheme, capability="upsert")

    async def prepare(self, locator: DatabaseLocator, options: DestinationOptions) -> 'PostgresTableWriter':
        native = await self._call(locator, self._prepare_table, locator, options)
        return PostgresTableWriter(self, locator, options.schema, native, options.if_exists)


class PostgresTableWriter(TableWriterBase):
    """A prepared PostgreSQL destination table"""

    def __init__(self, driver: PostgresDriver, locator: DatabaseLocator, schema: TableIR,
                 native: NativeTable, if_exists: IfExists):
        super().__init__(locator)
        self.driver = driver
        self.schema = schema
        self.native = native
        self.if_exists = if_exists

    async def open_stream(self, index: int) -> 'PostgresStreamWriter':
        return PostgresStreamWriter(self, index)


class PostgresStreamWriter:
    """One destination stream on its own connection; one transaction per chunk"""

    def __init__(self, table: PostgresTableWriter, index: int):
        self.table = table
        self.index = index
        self.locator = table.locator
        self.dialect = table.driver.dialect
        schema = table.schema
        self.key = table.if_exists.key if table.if_exists.mode == IfExistsMode.UPSERT else None
        self.staged = self.key is not None or any(c.type.kind == PortableType.GEOMETRY for c in schema.columns)
        self.stage_name = f"dbtransit_stage_{index}"
        self._worker = ThreadWorker(f"dbtransit-{self.dialect}-{index}")
        self._conn = None
        self._stage_ready = False

    def _copy_sql(self, target: str) -> str:
        return f"COPY {target} ({column_list(self.table.schema.column_names, self.dialect)}) FROM STDIN WITH (FORMAT csv)"

    def _cast(self, column: NativeColumn, dtype) -> str:
        quoted = quote_ident(column.name, self.dialect)
        if dtype.kind == PortableType.GEOMETRY:
            geometry = f"ST_GeomFromGeoJSON({quoted})"
            return f"ST_SetSRID({geometry}, {dtype.srid})" if dtype.srid is not None else geometry
        return f"CAST({quoted} AS {column.native_type})"

    def _merge_sql(self) -> str:
        schema = self.table.schema
        target = quote_table(self.locator.table, self.dialect)
        columns = column_list(schema.column_names, self.dialect)
        casts = ", ".join(self._cast(native, col.type) for native, col in zip(self.table.native.columns, schema.columns))
        if self.key is None:
            return f"INSERT INTO {target} ({columns}) SELECT {casts} FROM {self.stage_name} ORDER BY dbtransit_seq"
        key = quote_ident(self.key, self.dialect)
        updates = [f"{quote_ident(n, self.dialect)} = EXCLUDED.{quote_ident(n, self.dialect)}"
                   for n in schema.column_names if n != self.key]
        action = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
        return (f"INSERT INTO {target} ({columns}) "
                f"SELECT DISTINCT ON ({key}) {casts} FROM {self.stage_name} "
                f"ORDER BY {key}, dbtransit_seq DESC "
                f"ON CONFLICT ({key}) {action}")

    def _ensure_stage(self, cur):
        if self._stage_ready:
            return
        columns = ", ".join(f"{quote_ident(n, self.dialect)} text" for n in self.table.schema.column_names)
        cur.execute(f"CREATE TEMP TABLE {self.stage_name} (dbtransit_seq bigserial, {columns})")
        self._stage_ready = True

    def _write_sync(self, rows: List[Row]):
        if self._conn is None:
            self._conn = self.table.driver.connect(self.locator)
            self._stage_ready = False
        data = io.StringIO(''.join(csv_line(row) for row in rows))
        try:
            with self._conn.cursor() as cur:
                if self.staged:
                    self._ensure_stage(cur)
                    cur.copy_expert(self._copy_sql(self.stage_name), data)
                    cur.execute(self._merge_sql())
                    cur.execute(f"TRUNCATE {self.stage_name}")
                else:
                    cur.copy_expert(self._copy_sql(quote_table(self.locator.table, self.dialect)), data)
            self._conn.commit()
        except psycopg2.Error as e:
            error = translate_error(e, self.locator, self.index)
            self._reset()
            raise error from e

    def _reset(self):
        # nothing from the failed chunk is committed; start the retry on a fresh session
        if self._conn is not None:
            try:
                self._conn.close()
            except psycopg2.Error as e:
                logger.debug(f"Closing connection for stream {self.index} failed: {e}")
        self._conn = None
        self._stage_ready = False

    async def write_chunk(self, rows: List[Row]) -> None:
        await self._worker.run(self._write_sync, rows)
        logger.debug(f"{self.locator.redacted()} stream {self.index}: committed {len(rows)} rows")

    async def close(self) -> None:
        try:
            await self._worker.run(self._reset)
        finally:
            self._worker.shutdown()
