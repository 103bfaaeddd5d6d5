#!/usr/bin/env python3
"""
dbtransit Copy Runner
=====================

Drives one copy request through

    Resolving -> SchemaNegotiating -> TempAllocating -> Streaming -> Finalizing
              -> Completed | Failed

Source partitions are moved concurrently (at most `max_streams` at a time).
Each stream has its own reader task, a bounded chunk queue and a writer, so
a slow destination stream only stalls its own reader. The first fatal error
in any stream cancels the others; temporary locations are released on every
exit path.

Caller-visible risk: there is no cross-driver rollback. When a copy fails
after streaming began, rows already committed by the destination stay there.

Also provides `count` and `convert` (schema-only conversion).
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dbtransit.config.settings import TransitConfig
from dbtransit.core import errors
from dbtransit.core.driver_registry import (
    Capability, DestinationOptions, DriverRegistry, IfExists, IfExistsMode,
    RowStream, SourceOptions, TableWriter,
)
from dbtransit.core.errors import CapabilityError, FatalIOError, TransientIOError, TransitError
from dbtransit.core.locator import Locator
from dbtransit.core.retry import RetryPolicy, retry_transient
from dbtransit.core.schema_ir import TableIR
from dbtransit.core.splitter import DEFAULT_CHUNK_SIZE, StreamSplitter
from dbtransit.core.temporary import TemporaryStorage
from dbtransit.core.type_registry import ConversionContext, LossPolicy

logger = logging.getLogger(__name__)


class CopyState(Enum):
    RESOLVING = "resolving"
    SCHEMA_NEGOTIATING = "schema_negotiating"
    TEMP_ALLOCATING = "temp_allocating"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class StagingMode(Enum):
    AUTO = "auto"      # stage only when the destination driver requires it
    ALWAYS = "always"  # always route rows through a temporary location
    NEVER = "never"    # refuse pairs that need staging


class CountMismatchPolicy(Enum):
    WARN = "warn"
    FAIL = "fail"


@dataclass(frozen=True)
class CopyRequest:
    """One cp invocation; never mutated while running"""
    source: Locator
    destination: Locator
    if_exists: IfExists = IfExists()
    max_streams: int = 4
    stream_size: Optional[int] = None
    schema: Optional[Locator] = None
    where: Optional[str] = None
    temporaries: Tuple[Locator, ...] = ()
    from_args: Mapping[str, str] = field(default_factory=dict)
    to_args: Mapping[str, str] = field(default_factory=dict)
    loss_policy: LossPolicy = LossPolicy.STRICT
    staging: StagingMode = StagingMode.AUTO
    count_mismatch: CountMismatchPolicy = CountMismatchPolicy.WARN

    def __post_init__(self):
        if self.max_streams < 1:
            raise ValueError(f"max_streams must be >= 1, got {self.max_streams}")
        if self.stream_size is not None and self.stream_size < 1:
            raise ValueError(f"stream_size must be positive, got {self.stream_size}")
        object.__setattr__(self, 'temporaries', tuple(self.temporaries))


@dataclass
class CopyResult:
    state: CopyState
    rows_written: int = 0
    source_row_count: Optional[int] = None
    written_locators: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


class CopyStats:
    """Row counts and the first error; the only state shared between stream tasks"""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.rows_per_stream: Dict[int, int] = {}
        self.first_error: Optional[BaseException] = None
        self.failed = asyncio.Event()

    async def add_rows(self, stream: int, count: int):
        async with self._lock:
            self.rows_per_stream[stream] = self.rows_per_stream.get(stream, 0) + count

    async def fail(self, error: BaseException) -> bool:
        """Record an error; True when it is the first"""
        async with self._lock:
            if self.first_error is not None:
                return False
            self.first_error = error
            self.failed.set()
            return True

    @property
    def total_rows(self) -> int:
        return sum(self.rows_per_stream.values())


_END = object()


class _StreamFailure:
    def __init__(self, error: BaseException):
        self.error = error


class CopyRunner:
    """Runs cp, count and conv against a driver registry"""

    def __init__(self, registry: DriverRegistry, config: Optional[TransitConfig] = None):
        self.registry = registry
        self.config = config or TransitConfig()
        self.retry_policy = RetryPolicy(self.config.max_retries, self.config.retry_delay)

    # ------------------------------------------------------------------
    # cp
    # ------------------------------------------------------------------

    async def copy(self, request: CopyRequest, cancel_event: Optional[asyncio.Event] = None) -> CopyResult:
        run_id = uuid.uuid4().hex[:12]
        result = CopyResult(state=CopyState.RESOLVING)
        stats = CopyStats()
        started = time.time()
        writer: Optional[TableWriter] = None
        streaming_started = False

        def transition(state: CopyState):
            result.state = state
            logger.info(f"[{run_id}] {state.value}")

        logger.info(f"[{run_id}] copy {request.source.redacted()} -> {request.destination.redacted()} "
                    f"(if-exists={request.if_exists}, max_streams={request.max_streams})")
        try:
            transition(CopyState.RESOLVING)
            staging_schemes = self._resolve(request)
            source_driver = self.registry.driver(request.source)
            dest_driver = self.registry.driver(request.destination)
            dest_driver.check_destination(request.destination, request.if_exists)

            transition(CopyState.SCHEMA_NEGOTIATING)
            schema = await self._negotiate_schema(request)
            context = ConversionContext(request.loss_policy)
            dest_options = DestinationOptions(schema, request.if_exists, dict(request.to_args),
                                              context, request.max_streams)
            source_options = SourceOptions(schema, request.max_streams, request.where, dict(request.from_args))
            result.source_row_count = await self._advisory_count(request, source_driver, source_options)
            writer = await dest_driver.prepare(request.destination, dest_options)
            result.warnings.extend(context.warnings)

            transition(CopyState.TEMP_ALLOCATING)
            async with TemporaryStorage(self.registry, request.temporaries,
                                        self.config.temp_dir, run_id) as temps:
                staged = await temps.allocate(staging_schemes) if staging_schemes else None

                transition(CopyState.STREAMING)
                streaming_started = True
                streams = await source_driver.open_streams(request.source, source_options)
                logger.info(f"[{run_id}] source produced {len(streams)} stream(s)")
                if staged is None:
                    await self._transfer(streams, writer, request.destination, request, stats, cancel_event)
                else:
                    await self._staged_transfer(streams, staged, writer, request, schema, stats, cancel_event)

                transition(CopyState.FINALIZING)
                result.written_locators = await writer.finish()

            result.rows_written = stats.total_rows
            self._check_counts(result, request)
            transition(CopyState.COMPLETED)
            logger.info(f"[{run_id}] copied {result.rows_written} rows to {request.destination.redacted()}")
            return result
        except asyncio.CancelledError:
            transition(CopyState.FAILED)
            logger.error(f"[{run_id}] copy cancelled")
            raise
        except Exception as e:
            transition(CopyState.FAILED)
            if streaming_started:
                logger.error(f"[{run_id}] copy failed after streaming began; {request.destination.redacted()} "
                             f"may contain partial data")
            logger.error(f"[{run_id}] {type(e).__name__}: {e}")
            raise
        finally:
            result.duration_seconds = time.time() - started
            if writer is not None:
                await self._quietly(writer.close(), "closing destination")

    def _resolve(self, request: CopyRequest) -> Tuple[str, ...]:
        """Capability checks; returns the temporary schemes to stage through (empty: direct)"""
        registry = self.registry
        registry.require(request.source, Capability.SOURCE)
        dest_spec = registry.require(request.destination, Capability.DESTINATION)
        if request.schema is not None:
            registry.require(request.schema, Capability.SCHEMA_SOURCE)
        registry.check_args(request.source, request.from_args, 'source')
        registry.check_args(request.destination, request.to_args, 'destination')
        registry.check_where(request.source, request.where)
        if request.if_exists.mode not in dest_spec.if_exists:
            raise CapabilityError(
                f"'{request.destination.scheme}' does not support --if-exists={request.if_exists.mode.value}",
                scheme=request.destination.scheme, capability=f"if_exists:{request.if_exists.mode.value}",
            )

        if dest_spec.staging:
            if request.staging == StagingMode.NEVER:
                raise CapabilityError(
                    f"'{request.destination.scheme}' can only load through a temporary location "
                    f"({', '.join(dest_spec.staging)}) but staging is disabled",
                    scheme=request.destination.scheme, capability="direct_load",
                )
            if not any(t.scheme in dest_spec.staging for t in request.temporaries):
                wanted = ' or '.join(f"--temporary={s}:..." for s in dest_spec.staging)
                raise CapabilityError(
                    f"'{request.destination.scheme}' loads through a temporary location: pass {wanted}",
                    scheme=request.destination.scheme, capability="temporary",
                )
            for temporary in request.temporaries:
                registry.require(temporary, Capability.TEMPORARY)
            return dest_spec.staging
        if request.staging == StagingMode.ALWAYS:
            return tuple(t.scheme for t in request.temporaries) + ('csv',)
        return ()

    async def _negotiate_schema(self, request: CopyRequest) -> TableIR:
        if request.schema is not None:
            locator = request.schema
            args: Mapping[str, str] = {}
        else:
            locator = request.source
            args = request.from_args
        driver = self.registry.driver(locator)
        schema = await retry_transient(lambda: driver.read_schema(locator, args), self.retry_policy,
                                       f"Reading schema from {locator.redacted()}")
        logger.debug(f"Schema {schema.name}: {[f'{c.name} {c.type}' for c in schema.columns]}")
        if request.if_exists.mode == IfExistsMode.UPSERT and schema.column(request.if_exists.key) is None:
            raise errors.SchemaConflictError(
                f"Upsert key '{request.if_exists.key}' is not a column of {request.source.redacted()}",
                locator=request.source.redacted(),
            )
        return schema

    async def _advisory_count(self, request: CopyRequest, driver: Any,
                              options: SourceOptions) -> Optional[int]:
        spec = self.registry.spec_for(request.source)
        if not (spec.supports(Capability.COUNT) and spec.advisory_count):
            return None
        return await retry_transient(lambda: driver.count(request.source, options), self.retry_policy,
                                     f"Counting rows in {request.source.redacted()}")

    def _check_counts(self, result: CopyResult, request: CopyRequest):
        expected = result.source_row_count
        if expected is None or expected == result.rows_written:
            return
        message = (f"Row count mismatch: source reported {expected} rows, "
                   f"{result.rows_written} were written to {request.destination.redacted()}")
        if request.count_mismatch == CountMismatchPolicy.FAIL:
            raise FatalIOError(message, locator=request.destination.redacted())
        logger.warning(message)
        result.warnings.append(message)

    async def _staged_transfer(self, streams: List[RowStream], staged: Locator, writer: TableWriter,
                               request: CopyRequest, schema: TableIR, stats: CopyStats,
                               cancel_event: Optional[asyncio.Event]):
        """Source -> temporary location, then temporary location -> destination"""
        stage_driver = self.registry.driver(staged)
        loads_staged = bool(self.registry.spec_for(request.destination).staging)
        # files read back here keep NULL and '' apart; files loaded by the destination use its format
        stage_options = DestinationOptions(schema, IfExists(IfExistsMode.APPEND), {},
                                           ConversionContext(request.loss_policy), request.max_streams,
                                           staged=not loads_staged)
        stage_writer = await stage_driver.prepare(staged, stage_options)
        stage_stats = CopyStats()
        try:
            await self._transfer(streams, stage_writer, staged, request, stage_stats, cancel_event)
            await stage_writer.finish()
        finally:
            await self._quietly(stage_writer.close(), "closing staging writer")
        logger.info(f"Staged {stage_stats.total_rows} rows in {staged.redacted()}")

        if loads_staged:
            await writer.load_staged(staged)
            await stats.add_rows(0, stage_stats.total_rows)
            return
        staged_streams = await stage_driver.open_streams(
            staged, SourceOptions(schema, request.max_streams, staged=True))
        await self._transfer(staged_streams, writer, request.destination, request, stats, cancel_event)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _transfer(self, streams: List[RowStream], writer: TableWriter, destination: Locator,
                        request: CopyRequest, stats: CopyStats,
                        cancel_event: Optional[asyncio.Event]):
        dest_driver = self.registry.driver(destination)
        if len(streams) > 1 and not dest_driver.accepts_multiple_streams(destination):
            logger.info(f"{destination.redacted()} takes a single stream; concatenating {len(streams)} streams")
            streams = [concatenate_streams(streams)]

        semaphore = asyncio.Semaphore(request.max_streams)
        tasks = [
            asyncio.create_task(self._guarded_stream(stream, writer, destination, request, stats, semaphore),
                                name=f"dbtransit-stream-{stream.index}")
            for stream in streams
        ]
        waiters = [asyncio.create_task(stats.failed.wait())]
        if cancel_event is not None:
            waiters.append(asyncio.create_task(cancel_event.wait()))

        try:
            pending = set(tasks)
            while pending:
                done, _ = await asyncio.wait(pending | set(waiters), return_when=asyncio.FIRST_COMPLETED)
                pending -= done
                if any(w in done for w in waiters):
                    break
            if cancel_event is not None and cancel_event.is_set():
                await stats.fail(errors.CancelledError("copy cancelled by request"))
        finally:
            for task in tasks + waiters:
                task.cancel()
            await asyncio.gather(*tasks, *waiters, return_exceptions=True)

        for stream in streams:
            await stream.close()
        if stats.first_error is not None:
            raise stats.first_error

    async def _guarded_stream(self, stream: RowStream, writer: TableWriter, destination: Locator,
                              request: CopyRequest, stats: CopyStats, semaphore: asyncio.Semaphore):
        try:
            async with semaphore:
                await self._run_stream(stream, writer, destination, request, stats)
        except asyncio.CancelledError:
            raise
        except TransitError as e:
            if await stats.fail(e):
                logger.error(f"Stream {stream.index} ({stream.name}) failed: {e}")
        except Exception as e:
            error = FatalIOError(f"Stream {stream.index} ({stream.name}) failed: {type(e).__name__}: {e}",
                                 locator=destination.redacted(), stream=stream.index)
            error.__cause__ = e
            if await stats.fail(error):
                logger.error(str(error))

    async def _run_stream(self, stream: RowStream, writer: TableWriter, destination: Locator,
                          request: CopyRequest, stats: CopyStats):
        splitter = StreamSplitter(request.stream_size or DEFAULT_CHUNK_SIZE)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.buffer_chunks)
        sink = await writer.open_stream(stream.index)
        producer = asyncio.create_task(self._produce(stream, splitter, queue))
        description = f"Writing stream {stream.index} to {destination.redacted()}"
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, _StreamFailure):
                    raise item.error
                await retry_transient(lambda: sink.write_chunk(item), self.retry_policy,
                                      description, stream.index)
                await stats.add_rows(stream.index, len(item))
                logger.debug(f"Stream {stream.index}: wrote chunk of {len(item)} rows")
        except BaseException:
            await self._stop_producer(producer, stream)
            await self._quietly(sink.close(), f"closing stream {stream.index}")
            raise
        await self._stop_producer(producer, stream)
        await sink.close()

    @staticmethod
    async def _stop_producer(producer: asyncio.Task, stream: RowStream):
        producer.cancel()
        await asyncio.gather(producer, return_exceptions=True)
        await stream.close()

    async def _produce(self, stream: RowStream, splitter: StreamSplitter, queue: asyncio.Queue):
        try:
            async for chunk in splitter.split_async(stream.rows()):
                await queue.put(chunk)
            await queue.put(_END)
        except asyncio.CancelledError:
            raise
        except TransientIOError as e:
            # a partially read stream cannot be resumed
            await queue.put(_StreamFailure(FatalIOError(
                f"Reading stream {stream.index} ({stream.name}) failed: {e.message}",
                locator=e.locator, stream=stream.index)))
        except Exception as e:
            await queue.put(_StreamFailure(e))

    @staticmethod
    async def _quietly(awaitable, what: str):
        try:
            await awaitable
        except Exception as e:
            logger.warning(f"Error while {what}: {e}")

    # ------------------------------------------------------------------
    # count
    # ------------------------------------------------------------------

    async def count(self, locator: Locator, schema: Optional[Locator] = None, where: Optional[str] = None,
                    temporaries: Tuple[Locator, ...] = (), args: Optional[Mapping[str, str]] = None) -> int:
        """Number of rows a copy of `locator` with the same filter would write"""
        args = dict(args or {})
        self.registry.require(locator, Capability.COUNT)
        if schema is not None:
            self.registry.require(schema, Capability.SCHEMA_SOURCE)
        self.registry.check_args(locator, args, 'source')
        self.registry.check_where(locator, where)
        if temporaries:
            logger.debug(f"count ignores {len(temporaries)} temporary location(s)")

        table = None
        if schema is not None:
            schema_driver = self.registry.driver(schema)
            table = await retry_transient(lambda: schema_driver.read_schema(schema, {}), self.retry_policy,
                                          f"Reading schema from {schema.redacted()}")
        driver = self.registry.driver(locator)
        options = SourceOptions(table, 1, where, args)
        total = await retry_transient(lambda: driver.count(locator, options), self.retry_policy,
                                      f"Counting rows in {locator.redacted()}")
        logger.info(f"{locator.redacted()}: {total} rows")
        return total

    # ------------------------------------------------------------------
    # conv
    # ------------------------------------------------------------------

    async def convert(self, source: Locator, destination: Locator, if_exists: IfExists = IfExists(),
                      loss_policy: LossPolicy = LossPolicy.STRICT) -> CopyResult:
        """Schema-only conversion; no rows move"""
        result = CopyResult(state=CopyState.RESOLVING)
        self.registry.require(source, Capability.SCHEMA_SOURCE)
        dest_spec = self.registry.require(destination, Capability.SCHEMA_DESTINATION)
        if if_exists.mode == IfExistsMode.UPSERT:
            raise CapabilityError("conv does not support --if-exists=upsert-on", scheme=destination.scheme,
                                  capability="if_exists:upsert-on")
        if if_exists.mode not in dest_spec.if_exists:
            raise CapabilityError(
                f"'{destination.scheme}' does not support --if-exists={if_exists.mode.value}",
                scheme=destination.scheme, capability=f"if_exists:{if_exists.mode.value}",
            )

        source_driver = self.registry.driver(source)
        dest_driver = self.registry.driver(destination)
        result.state = CopyState.SCHEMA_NEGOTIATING
        schema = await retry_transient(lambda: source_driver.read_schema(source, {}), self.retry_policy,
                                       f"Reading schema from {source.redacted()}")
        context = ConversionContext(loss_policy)
        options = DestinationOptions(schema, if_exists, {}, context)
        result.written_locators = await retry_transient(
            lambda: dest_driver.write_schema(destination, options), self.retry_policy,
            f"Writing schema to {destination.redacted()}")
        result.warnings = list(context.warnings)
        result.state = CopyState.COMPLETED
        logger.info(f"Converted schema {source.redacted()} -> {destination.redacted()}")
        return result


def concatenate_streams(streams: List[RowStream]) -> RowStream:
    """One stream reading `streams` back to back, in partition order"""
    ordered = sorted(streams, key=lambda s: s.index)

    async def batches():
        for stream in ordered:
            try:
                batch = []
                async for row in stream.rows():
                    batch.append(row)
                    if len(batch) >= 1000:
                        yield batch
                        batch = []
                if batch:
                    yield batch
            finally:
                await stream.close()

    return RowStream(0, '+'.join(s.name for s in ordered), batches)
