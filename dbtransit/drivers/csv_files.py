"""
CSV files driver.

Locators: ``csv:path/file.csv`` (one file), ``csv:path/dir/`` (every
``*.csv`` in a directory, one stream per file) and ``csv:-`` (stdin/stdout).

Reading goes through pandas in fixed-size chunks with every column kept as
text. CSV carries no types, so the schema read from a header is all
nullable text; pass ``--schema`` to give the columns real types. Writing
uses the canonical CSV line encoder, header first. Appends to a local file
are not transactional, so write failures are fatal rather than retried.

Also provides local temporary storage: scratch sub-directories under a
``csv:dir/`` pool.
"""

import io
import os
import sys
import glob
import shutil
import logging
import threading
import uuid
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, TextIO

import pandas as pd

from dbtransit.core.driver_registry import (
    DestinationOptions, IfExists, IfExistsMode, RowStream, SourceOptions,
    TableWriterBase, ThreadWorker, iterate_in_thread,
)
from dbtransit.core.errors import (
    CapabilityError, ConversionError, FatalIOError, SchemaConflictError,
)
from dbtransit.core.locator import FileLocator
from dbtransit.core.schema_ir import ColumnIR, TableIR
from dbtransit.core.type_registry import DataType
from dbtransit.core.values import Row, csv_line, stage_row, unstage_row

logger = logging.getLogger(__name__)

CHUNK_ROWS = 10000


# =============================================================================
# Shared CSV reading (also used by the S3 driver)
# =============================================================================

def read_header(source: Any, delimiter: str = ',') -> List[str]:
    """Column names from the first line of a CSV file or file-like object"""
    try:
        frame = pd.read_csv(source, nrows=0, sep=delimiter, dtype=str)
    except pd.errors.EmptyDataError as e:
        raise ConversionError(f"CSV input has no header line: {e}") from e
    return [str(c) for c in frame.columns]


def header_schema(name: str, columns: Sequence[str]) -> TableIR:
    return TableIR(name, [ColumnIR(c, DataType.text(), True) for c in columns])


def read_batches(source: Any, delimiter: str = ',', columns: Optional[Sequence[str]] = None,
                 chunk_rows: int = CHUNK_ROWS, staged: bool = False) -> Iterator[List[Row]]:
    """
    Yield lists of text rows from CSV input.

    Args:
        source: path or file-like object
        delimiter: field separator
        columns: output column order; every name must appear in the header
        chunk_rows: rows per pandas chunk
        staged: input was written with values.stage_row

    Empty fields become NULL, except in staged input where only \\N does.
    """
    if staged:
        na_options: Dict[str, Any] = {'na_filter': False}
    else:
        na_options = {'keep_default_na': False, 'na_values': ['']}
    try:
        reader = pd.read_csv(source, sep=delimiter, dtype=str, chunksize=chunk_rows, **na_options)
    except pd.errors.EmptyDataError:
        return
    with reader:
        for chunk in reader:
            if columns is not None:
                missing = [c for c in columns if c not in chunk.columns]
                if missing:
                    raise ConversionError(f"CSV input is missing column(s): {', '.join(missing)}")
                chunk = chunk[list(columns)]
            if staged:
                yield [unstage_row(record) for record in chunk.itertuples(index=False, name=None)]
                continue
            chunk = chunk.astype(object).where(pd.notnull(chunk), None)
            yield [tuple(record) for record in chunk.itertuples(index=False, name=None)]


def count_rows(source: Any, delimiter: str = ',') -> int:
    return sum(len(batch) for batch in read_batches(source, delimiter))


def has_data_rows(source: Any, delimiter: str = ',') -> bool:
    """True when CSV input holds at least one row below its header"""
    batches = read_batches(source, delimiter, chunk_rows=1)
    try:
        return any(batches)
    finally:
        batches.close()


# =============================================================================
# Driver
# =============================================================================

class CsvDriver:
    """Local CSV files: source, destination, schema source, count, temporary storage"""

    def __init__(self, credentials: Any = None, stdin: Optional[TextIO] = None,
                 stdout: Optional[TextIO] = None):
        self.credentials = credentials
        self._stdin = stdin
        self._stdout = stdout
        self._stdin_text: Optional[str] = None
        self._stdin_lock = threading.Lock()

    def _stdin_buffer(self) -> io.StringIO:
        # stdin can only be consumed once; keep it for schema, count and rows
        with self._stdin_lock:
            if self._stdin_text is None:
                self._stdin_text = (self._stdin or sys.stdin).read()
        return io.StringIO(self._stdin_text)

    def _files(self, locator: FileLocator) -> List[str]:
        if locator.is_directory:
            files = sorted(glob.glob(os.path.join(locator.path, '*.csv')))
            if not files:
                raise FatalIOError(f"No .csv files in {locator.path}", locator=str(locator))
            return files
        if not os.path.exists(locator.path):
            raise FatalIOError(f"CSV file {locator.path} does not exist", locator=str(locator))
        return [locator.path]

    def _open_input(self, locator: FileLocator, path: Optional[str] = None) -> Any:
        return self._stdin_buffer() if locator.is_stdio else path

    @staticmethod
    def _table_name(locator: FileLocator) -> str:
        if locator.is_stdio:
            return 'stdin'
        base = os.path.basename(locator.path.rstrip('/'))
        return os.path.splitext(base)[0] or 'data'

    # ----- schema / source -----

    def _read_schema_sync(self, locator: FileLocator, delimiter: str) -> TableIR:
        source = self._open_input(locator) if locator.is_stdio else self._files(locator)[0]
        try:
            return header_schema(self._table_name(locator), read_header(source, delimiter))
        except OSError as e:
            raise FatalIOError(f"Cannot read {locator}: {e}", locator=str(locator)) from e

    async def read_schema(self, locator: FileLocator, args: Mapping[str, str]) -> TableIR:
        worker = ThreadWorker("dbtransit-csv")
        try:
            return await worker.run(self._read_schema_sync, locator, args.get('delimiter', ','))
        finally:
            worker.shutdown()

    async def count(self, locator: FileLocator, options: SourceOptions) -> int:
        delimiter = options.args.get('delimiter', ',')

        def run():
            sources = [self._stdin_buffer()] if locator.is_stdio else self._files(locator)
            try:
                return sum(count_rows(source, delimiter) for source in sources)
            except OSError as e:
                raise FatalIOError(f"Cannot read {locator}: {e}", locator=str(locator)) from e

        worker = ThreadWorker("dbtransit-csv")
        try:
            return await worker.run(run)
        finally:
            worker.shutdown()

    async def open_streams(self, locator: FileLocator, options: SourceOptions) -> List[RowStream]:
        delimiter = options.args.get('delimiter', ',')
        columns = options.schema.column_names if options.schema is not None else None
        if locator.is_stdio:
            sources: List[Any] = [None]
            names = ['stdin']
        else:
            sources = self._files(locator)
            names = [os.path.basename(p) for p in sources]

        def make_stream(index: int, source: Any, name: str) -> RowStream:
            def batches() -> Iterator[List[Row]]:
                handle = self._stdin_buffer() if source is None else source
                try:
                    yield from read_batches(handle, delimiter, columns, staged=options.staged)
                except OSError as e:
                    raise FatalIOError(f"Cannot read {name}: {e}", locator=str(locator), stream=index) from e
            return RowStream(index, name, lambda: iterate_in_thread(batches))

        return [make_stream(i, s, n) for i, (s, n) in enumerate(zip(sources, names))]

    # ----- destination -----

    def check_destination(self, locator: FileLocator, if_exists: IfExists) -> None:
        if if_exists.mode == IfExistsMode.UPSERT:
            raise CapabilityError("csv destinations do not support --if-exists=upsert-on",
                                  scheme=locator.scheme, capability="if_exists:upsert-on")
        if locator.is_stdio and if_exists.mode == IfExistsMode.APPEND:
            raise CapabilityError("csv:- cannot be appended to", scheme=locator.scheme,
                                  capability="if_exists:append")

    def accepts_multiple_streams(self, locator: FileLocator) -> bool:
        return locator.is_directory

    def _prepare_sync(self, locator: FileLocator, options: DestinationOptions) -> Optional[str]:
        mode = options.if_exists.mode
        columns = options.schema.column_names
        if locator.is_stdio:
            return None
        delimiter = options.args.get('delimiter', ',')
        if locator.is_directory:
            os.makedirs(locator.path, exist_ok=True)
            existing = sorted(glob.glob(os.path.join(locator.path, '*.csv')))
            if mode == IfExistsMode.ERROR and any(has_data_rows(path, delimiter) for path in existing):
                raise SchemaConflictError(f"Destination {locator} already contains rows in "
                                          f"{len(existing)} file(s)", locator=str(locator))
            if mode == IfExistsMode.OVERWRITE:
                for path in existing:
                    os.remove(path)
            if existing and mode in (IfExistsMode.ERROR, IfExistsMode.APPEND):
                self._check_header(locator, existing[0], columns, delimiter)
                return uuid.uuid4().hex[:8]
            return None

        parent = os.path.dirname(locator.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        if os.path.exists(locator.path) and os.path.getsize(locator.path) > 0:
            if mode == IfExistsMode.ERROR and has_data_rows(locator.path, delimiter):
                raise SchemaConflictError(f"Destination {locator} already exists and is not empty",
                                          locator=str(locator))
            if mode in (IfExistsMode.ERROR, IfExistsMode.APPEND):
                # rows go below the existing header
                self._check_header(locator, locator.path, columns, delimiter)
                return None
        with open(locator.path, 'w', encoding='utf-8', newline=''):
            pass
        return None

    @staticmethod
    def _check_header(locator: FileLocator, path: str, columns: List[str], delimiter: str):
        found = read_header(path, delimiter)
        if found != columns:
            raise SchemaConflictError(
                f"Cannot append to {locator}: header {found} does not match columns {columns}",
                locator=str(locator), details={'header': found, 'columns': columns},
            )

    async def prepare(self, locator: FileLocator, options: DestinationOptions) -> 'CsvTableWriter':
        worker = ThreadWorker("dbtransit-csv")
        try:
            token = await worker.run(self._prepare_sync, locator, options)
        except OSError as e:
            raise FatalIOError(f"Cannot prepare {locator}: {e}", locator=str(locator)) from e
        finally:
            worker.shutdown()
        return CsvTableWriter(locator, options.schema.column_names, options.args.get('delimiter', ','),
                              token, self._stdout, options.staged)

    # ----- temporary storage -----

    async def create_temporary(self, pool: FileLocator, name: str) -> FileLocator:
        if not pool.is_directory:
            raise CapabilityError(f"Temporary pool {pool} must be a directory ending in '/'",
                                  scheme=pool.scheme, capability="temporary")
        location = FileLocator(pool.scheme, os.path.join(pool.path, name) + '/')
        worker = ThreadWorker("dbtransit-csv")
        try:
            await worker.run(lambda: os.makedirs(location.path, exist_ok=False))
        except OSError as e:
            raise FatalIOError(f"Cannot create temporary directory {location.path}: {e}",
                               locator=str(location)) from e
        finally:
            worker.shutdown()
        return location

    async def remove_temporary(self, locator: FileLocator) -> None:
        worker = ThreadWorker("dbtransit-csv")
        try:
            await worker.run(shutil.rmtree, locator.path)
        except FileNotFoundError:
            pass
        finally:
            worker.shutdown()


class CsvTableWriter(TableWriterBase):
    """A prepared CSV file, directory or stdout"""

    def __init__(self, locator: FileLocator, columns: List[str], delimiter: str = ',',
                 token: Optional[str] = None, stdout: Optional[TextIO] = None, staged: bool = False):
        super().__init__(locator)
        self.staged = staged
        self.columns = columns
        self.delimiter = delimiter
        self.token = token
        self.stdout = stdout
        self.written: List[str] = []

    def _path_for(self, index: int) -> str:
        if not self.locator.is_directory:
            return self.locator.path
        stem = f"part-{self.token}-{index:05d}" if self.token else f"part-{index:05d}"
        return os.path.join(self.locator.path, f"{stem}.csv")

    async def open_stream(self, index: int) -> 'CsvStreamWriter':
        if self.locator.is_stdio:
            target = None
        else:
            target = self._path_for(index)
            self.written.append(f"{self.locator.scheme}:{target}")
        return CsvStreamWriter(self, target, index)

    async def finish(self) -> List[str]:
        if self.locator.is_stdio:
            return [str(self.locator)]
        return sorted(set(self.written))


class CsvStreamWriter:
    """Appends rows of one stream to one file (or stdout)"""

    def __init__(self, table: CsvTableWriter, path: Optional[str], index: int):
        self.table = table
        self.path = path
        self.index = index
        self._worker = ThreadWorker(f"dbtransit-csv-{index}")
        self._handle: Optional[TextIO] = None

    def _open_sync(self) -> TextIO:
        if self.path is None:
            handle = self.table.stdout or sys.stdout
            needs_header = True
        else:
            handle = open(self.path, 'a', encoding='utf-8', newline='')
            needs_header = handle.tell() == 0
        if needs_header:
            handle.write(csv_line(self.table.columns, self.table.delimiter))
        return handle

    def _write_sync(self, rows: List[Row]):
        try:
            if self._handle is None:
                self._handle = self._open_sync()
            if self.table.staged:
                rows = [stage_row(row) for row in rows]
            self._handle.write(''.join(csv_line(row, self.table.delimiter) for row in rows))
            self._handle.flush()
        except OSError as e:
            raise FatalIOError(f"Writing {self.path or 'stdout'} failed: {e}",
                               locator=str(self.table.locator), stream=self.index) from e

    async def write_chunk(self, rows: List[Row]) -> None:
        await self._worker.run(self._write_sync, rows)

    def _close_sync(self):
        if self._handle is None:
            # a stream with no rows still produces a file with a header
            self._write_sync([])
        if self.path is not None:
            self._handle.close()
        else:
            self._handle.flush()
        self._handle = None

    async def close(self) -> None:
        try:
            await self._worker.run(self._close_sync)
        finally:
            self._worker.shutdown()
