#!/usr/bin/env python3
"""
dbtransit Driver Capability Interface and Registry
==================================================

Every supported system is a driver object implementing some of four small
roles, selected at runtime by locator scheme:

- DataSource:        schema + N parallel RowStreams (+ optional count)
- DataDestination:   schema negotiation, If-Exists policy, N StreamWriters
- SchemaSource:      read a TableIR without moving rows
- SchemaDestination: write a TableIR without moving rows

Plus TemporaryStore for schemes that can host scratch data. The registry
knows each scheme's roles from its DriverSpec, so capability checks run
before a driver is even constructed.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any, AsyncIterator, Callable, Dict, FrozenSet, Iterator, List, Mapping,
    Optional, Protocol, Tuple, runtime_checkable,
)

from dbtransit.core.errors import CapabilityError
from dbtransit.core.locator import Locator
from dbtransit.core.schema_ir import TableIR
from dbtransit.core.type_registry import ConversionContext
from dbtransit.core.values import Row

logger = logging.getLogger(__name__)


class Capability(Enum):
    SOURCE = "as_source"
    DESTINATION = "as_destination"
    SCHEMA_SOURCE = "as_schema_source"
    SCHEMA_DESTINATION = "as_schema_destination"
    COUNT = "count"
    TEMPORARY = "temporary_storage"


class IfExistsMode(Enum):
    ERROR = "error"
    OVERWRITE = "overwrite"
    APPEND = "append"
    UPSERT = "upsert-on"


@dataclass(frozen=True)
class IfExists:
    """If-Exists policy; `key` is set only for UPSERT"""
    mode: IfExistsMode = IfExistsMode.ERROR
    key: Optional[str] = None

    def __post_init__(self):
        if (self.mode == IfExistsMode.UPSERT) != (self.key is not None):
            raise ValueError("upsert-on requires a key column and other modes take none")

    @classmethod
    def parse(cls, text: str) -> 'IfExists':
        """'error' | 'overwrite' | 'append' | 'upsert-on:COL'"""
        if text.startswith('upsert-on:'):
            key = text[len('upsert-on:'):]
            if not key:
                raise ValueError("upsert-on: needs a column name")
            return cls(IfExistsMode.UPSERT, key)
        try:
            mode = IfExistsMode(text)
        except ValueError:
            raise ValueError(f"Invalid --if-exists value {text!r}") from None
        if mode == IfExistsMode.UPSERT:
            raise ValueError("upsert-on needs a column: upsert-on:COL")
        return cls(mode)

    def __str__(self):
        if self.mode == IfExistsMode.UPSERT:
            return f"upsert-on:{self.key}"
        return self.mode.value


ALL_IF_EXISTS = frozenset(IfExistsMode)


@dataclass(frozen=True)
class SourceOptions:
    """What a source needs to materialize its streams (schema is unset for plain counts)"""
    schema: Optional[TableIR]
    max_streams: int = 1
    where: Optional[str] = None
    args: Mapping[str, str] = field(default_factory=dict)
    # rows were written by a staging writer (see values.stage_row)
    staged: bool = False


@dataclass(frozen=True)
class DestinationOptions:
    """What a destination needs to accept rows"""
    schema: TableIR
    if_exists: IfExists = IfExists()
    args: Mapping[str, str] = field(default_factory=dict)
    context: ConversionContext = field(default_factory=ConversionContext, compare=False)
    max_streams: int = 1
    # encode rows with values.stage_row so a staged read gets them back unchanged
    staged: bool = False


# =============================================================================
# Streams
# =============================================================================

class RowStream:
    """
    One partition of a source. Driven by exactly one task, closed exactly once.

    `open_batches` is called lazily on first read and yields lists of rows.
    """

    def __init__(self, index: int, name: str, open_batches: Callable[[], AsyncIterator[List[Row]]]):
        self.index = index
        self.name = name
        self._open_batches = open_batches
        self._batches: Optional[AsyncIterator[List[Row]]] = None
        self.closed = False

    async def rows(self) -> AsyncIterator[Row]:
        if self._batches is not None or self.closed:
            raise RuntimeError(f"Stream {self.name} has already been read")
        self._batches = self._open_batches()
        async for batch in self._batches:
            for row in batch:
                yield row

    async def close(self):
        if self.closed:
            return
        self.closed = True
        if self._batches is not None:
            await self._batches.aclose()

    def __repr__(self):
        return f"RowStream({self.index}, {self.name!r})"


async def iterate_in_thread(make_iterator: Callable[[], Iterator[List[Row]]]) -> AsyncIterator[List[Row]]:
    """
    Drive a blocking batch iterator from a dedicated worker thread so the
    event loop never waits on driver I/O. Every call for one iterator runs on
    the same thread, in order, and the iterator is closed on every exit path.
    """
    loop = asyncio.get_running_loop()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dbtransit-stream")
    iterator = None
    try:
        iterator = await loop.run_in_executor(executor, make_iterator)
        while True:
            batch = await loop.run_in_executor(executor, next, iterator, None)
            if batch is None:
                break
            yield batch
    finally:
        close = getattr(iterator, 'close', None)
        if close is not None:
            await loop.run_in_executor(executor, close)
        executor.shutdown(wait=False)


class ThreadWorker:
    """
    Runs blocking calls for one connection on one dedicated thread, in order.
    Used by writers whose driver objects must stay on the thread that made them.
    """

    def __init__(self, name: str = "dbtransit-writer"):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)

    async def run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def shutdown(self):
        self._executor.shutdown(wait=False)


@runtime_checkable
class StreamWriter(Protocol):
    """Consumes chunks for one destination stream"""

    async def write_chunk(self, rows: List[Row]) -> None:
        """Commit one chunk atomically. Raise TransientIOError only if nothing was committed."""

    async def close(self) -> None:
        ...


@runtime_checkable
class TableWriter(Protocol):
    """A prepared destination for one copy"""

    async def open_stream(self, index: int) -> StreamWriter:
        ...

    async def load_staged(self, staged: Locator) -> None:
        """Load rows previously written to a temporary location (staging drivers only)"""

    async def finish(self) -> List[str]:
        """Commit step; returns every locator actually written"""

    async def close(self) -> None:
        ...


class TableWriterBase:
    """Defaults shared by concrete table writers"""

    def __init__(self, locator: Locator):
        self.locator = locator

    async def load_staged(self, staged: Locator) -> None:
        raise CapabilityError(f"'{self.locator.scheme}' cannot load from a temporary location",
                              scheme=self.locator.scheme, capability="load_staged")

    async def finish(self) -> List[str]:
        return [self.locator.redacted()]

    async def close(self) -> None:
        pass


# =============================================================================
# Roles
# =============================================================================

@runtime_checkable
class SchemaSource(Protocol):
    async def read_schema(self, locator: Locator, args: Mapping[str, str]) -> TableIR:
        ...


@runtime_checkable
class SchemaDestination(Protocol):
    async def write_schema(self, locator: Locator, options: DestinationOptions) -> List[str]:
        ...


@runtime_checkable
class DataSource(Protocol):
    async def read_schema(self, locator: Locator, args: Mapping[str, str]) -> TableIR:
        ...

    async def open_streams(self, locator: Locator, options: SourceOptions) -> List[RowStream]:
        ...


@runtime_checkable
class RowCounter(Protocol):
    async def count(self, locator: Locator, options: SourceOptions) -> int:
        ...


@runtime_checkable
class DataDestination(Protocol):
    def check_destination(self, locator: Locator, if_exists: IfExists) -> None:
        """Locator-level capability checks; raise CapabilityError before any I/O"""

    def accepts_multiple_streams(self, locator: Locator) -> bool:
        ...

    async def prepare(self, locator: Locator, options: DestinationOptions) -> TableWriter:
        ...


@runtime_checkable
class TemporaryStore(Protocol):
    async def create_temporary(self, pool: Locator, name: str) -> Locator:
        ...

    async def remove_temporary(self, locator: Locator) -> None:
        ...


ROLE_PROTOCOLS = {
    Capability.SOURCE: DataSource,
    Capability.DESTINATION: DataDestination,
    Capability.SCHEMA_SOURCE: SchemaSource,
    Capability.SCHEMA_DESTINATION: SchemaDestination,
    Capability.COUNT: RowCounter,
    Capability.TEMPORARY: TemporaryStore,
}


# =============================================================================
# Registry
# =============================================================================

@dataclass(frozen=True)
class DriverSpec:
    """Static description of one scheme's driver"""
    scheme: str
    factory: Callable[[Any], Any]
    capabilities: FrozenSet[Capability]
    source_args: FrozenSet[str] = frozenset()
    destination_args: FrozenSet[str] = frozenset()
    if_exists: FrozenSet[IfExistsMode] = ALL_IF_EXISTS
    staging: Tuple[str, ...] = ()   # temporary schemes a destination must load from
    supports_where: bool = False
    advisory_count: bool = False    # count is cheap enough to run before every copy

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities


class DriverRegistry:
    """Maps locator schemes to drivers; constructs drivers lazily with injected credentials"""

    def __init__(self, credentials: Any = None):
        self.credentials = credentials
        self._specs: Dict[str, DriverSpec] = {}
        self._drivers: Dict[str, Any] = {}

    def register(self, spec: DriverSpec):
        self._specs[spec.scheme] = spec
        self._drivers.pop(spec.scheme, None)
        logger.debug(f"Registered driver for '{spec.scheme}': {sorted(c.value for c in spec.capabilities)}")

    @property
    def schemes(self) -> List[str]:
        return sorted(self._specs)

    def spec_for(self, locator: Locator) -> DriverSpec:
        spec = self._specs.get(locator.scheme)
        if spec is None:
            raise CapabilityError(f"No driver registered for scheme '{locator.scheme}'",
                                  scheme=locator.scheme)
        return spec

    def require(self, locator: Locator, capability: Capability) -> DriverSpec:
        spec = self.spec_for(locator)
        if not spec.supports(capability):
            raise CapabilityError(
                f"'{locator.scheme}' does not support {capability.value} (needed for {locator.redacted()})",
                scheme=locator.scheme, capability=capability.value,
            )
        return spec

    def check_args(self, locator: Locator, args: Mapping[str, str], role: str):
        spec = self.spec_for(locator)
        allowed = spec.source_args if role == 'source' else spec.destination_args
        unknown = sorted(set(args) - set(allowed))
        if unknown:
            raise CapabilityError(
                f"'{locator.scheme}' does not accept {role} argument(s): {', '.join(unknown)}",
                scheme=locator.scheme, capability=f"{role}_args",
            )

    def check_where(self, locator: Locator, where: Optional[str]):
        if where and not self.spec_for(locator).supports_where:
            raise CapabilityError(f"'{locator.scheme}' does not support --where filters",
                                  scheme=locator.scheme, capability="where")

    def driver(self, locator: Locator) -> Any:
        """Driver instance for the locator's scheme (may raise AuthenticationError)"""
        spec = self.spec_for(locator)
        driver = self._drivers.get(spec.scheme)
        if driver is None:
            driver = spec.factory(self.credentials)
            missing = sorted(c.value for c in spec.capabilities if not isinstance(driver, ROLE_PROTOCOLS[c]))
            if missing:
                raise TypeError(f"Driver for '{spec.scheme}' does not implement its declared roles: "
                                f"{', '.join(missing)}")
            self._drivers[spec.scheme] = driver
        return driver
