"""
Stream splitter: frames a row stream into size-bounded chunks.

A chunk never exceeds the target size unless a single row alone is larger,
in which case that row is emitted as its own chunk. Row content and order
are untouched.
"""

import logging
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional

from dbtransit.core.values import Row, row_size

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024


class StreamSplitter:
    """Slices rows into chunks of at most `target_size` encoded bytes"""

    def __init__(self, target_size: int = DEFAULT_CHUNK_SIZE, max_rows: Optional[int] = None):
        if target_size < 1:
            raise ValueError(f"target_size must be positive, got {target_size}")
        if max_rows is not None and max_rows < 1:
            raise ValueError(f"max_rows must be positive, got {max_rows}")
        self.target_size = target_size
        self.max_rows = max_rows
        self._chunk: List[Row] = []
        self._chunk_bytes = 0

    def push(self, row: Row) -> Optional[List[Row]]:
        """Add one row; returns a completed chunk when `row` does not fit"""
        size = row_size(row)
        full = None
        if self._chunk and (self._chunk_bytes + size > self.target_size
                            or (self.max_rows and len(self._chunk) >= self.max_rows)):
            full = self._take()
        self._chunk.append(row)
        self._chunk_bytes += size
        if size > self.target_size:
            logger.debug(f"Oversized row ({size} bytes > {self.target_size}) emitted as its own chunk")
            if full is not None:
                # hand back the previous chunk now; the oversized row follows on the next push/flush
                return full
            return self._take()
        return full

    def flush(self) -> Optional[List[Row]]:
        """Return the trailing partial chunk, if any"""
        return self._take() if self._chunk else None

    def _take(self) -> List[Row]:
        chunk, self._chunk, self._chunk_bytes = self._chunk, [], 0
        return chunk

    def split(self, rows: Iterable[Row]) -> Iterator[List[Row]]:
        for row in rows:
            chunk = self.push(row)
            if chunk is not None:
                yield chunk
        tail = self.flush()
        if tail is not None:
            yield tail

    async def split_async(self, rows: AsyncIterable[Row]) -> AsyncIterator[List[Row]]:
        async for row in rows:
            chunk = self.push(row)
            if chunk is not None:
                yield chunk
        tail = self.flush()
        if tail is not None:
            yield tail
