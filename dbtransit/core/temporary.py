"""
Temporary Resource Manager.

Allocates uniquely named scratch locations for one copy request and
releases them, newest first, on every exit path: success, error or
cancellation. Locations come from the caller's --temporary pool, or from a
private local scratch directory when the requesting driver accepts csv.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import uuid
from typing import Any, List, Optional, Sequence, Tuple

from dbtransit.core.driver_registry import Capability, DriverRegistry
from dbtransit.core.errors import CapabilityError, FatalIOError
from dbtransit.core.locator import FileLocator, Locator

logger = logging.getLogger(__name__)


class TemporaryStorage:
    """Scoped temporary locations owned by one copy request"""

    def __init__(self, registry: DriverRegistry, pool: Sequence[Locator] = (),
                 scratch_root: Optional[str] = None, run_id: Optional[str] = None):
        self.registry = registry
        self.pool = list(pool)
        self.scratch_root = scratch_root
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._allocated: List[Tuple[Any, Locator]] = []
        self._scratch_dir: Optional[str] = None

    @property
    def allocated(self) -> List[Locator]:
        return [loc for _, loc in self._allocated]

    def _pick_pool(self, schemes: Sequence[str]) -> Optional[Locator]:
        for candidate in self.pool:
            if candidate.scheme in schemes:
                return candidate
        return None

    async def allocate(self, schemes: Sequence[str]) -> Locator:
        """Allocate a fresh location under a pool entry whose scheme is in `schemes`"""
        pool = self._pick_pool(schemes)
        if pool is None:
            if 'csv' not in schemes:
                wanted = ' or '.join(f"--temporary={s}:..." for s in schemes)
                raise CapabilityError(f"This copy needs a temporary location: pass {wanted}",
                                      scheme=schemes[0] if schemes else None, capability="temporary")
            pool = await self._local_pool()

        self.registry.require(pool, Capability.TEMPORARY)
        store = self.registry.driver(pool)
        name = f"dbtransit-{self.run_id}-{len(self._allocated)}-{uuid.uuid4().hex[:8]}"
        location = await store.create_temporary(pool, name)
        self._allocated.append((store, location))
        logger.info(f"Allocated temporary location {location.redacted()}")
        return location

    async def _local_pool(self) -> Locator:
        if self._scratch_dir is None:
            if self.scratch_root:
                os.makedirs(self.scratch_root, exist_ok=True)
            self._scratch_dir = await asyncio.to_thread(
                tempfile.mkdtemp, prefix="dbtransit-", dir=self.scratch_root)
            logger.debug(f"Created local scratch directory {self._scratch_dir}")
        return FileLocator('csv', self._scratch_dir.rstrip('/') + '/')

    async def release_all(self):
        """Release every allocation in reverse order; report the first failure after trying all"""
        first_error: Optional[BaseException] = None
        while self._allocated:
            store, location = self._allocated.pop()
            try:
                await store.remove_temporary(location)
                logger.info(f"Released temporary location {location.redacted()}")
            except Exception as e:
                logger.error(f"Failed to release temporary location {location.redacted()}: {e}")
                first_error = first_error or e
        if self._scratch_dir is not None:
            scratch, self._scratch_dir = self._scratch_dir, None
            await asyncio.to_thread(shutil.rmtree, scratch, True)
        if first_error is not None:
            raise FatalIOError(f"Could not release temporary storage: {first_error}") from first_error

    async def __aenter__(self) -> 'TemporaryStorage':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        release = asyncio.ensure_future(self.release_all())
        try:
            await asyncio.shield(release)
        except asyncio.CancelledError:
            # finish releasing before letting cancellation continue
            await release
            raise
        except FatalIOError:
            if exc is None:
                raise
            logger.error("Temporary cleanup failed while handling an earlier error")
        return False
