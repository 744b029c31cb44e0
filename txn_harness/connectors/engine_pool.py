"""
Engine Pool

Leases named remote engines to concurrently running tests, with dynamic resize,
self-healing validation and pluggable name generation.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from itertools import count
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from txn_harness.config import settings
from txn_harness.connectors.clients import ProvisioningClient
from txn_harness.core.errors import (
    DuplicateEngineName,
    NoEngineAvailable,
    ProvisionFailed,
    is_not_found,
)
from txn_harness.core.names import NameGenerator, default_engine_name
from txn_harness.models import EngineState

logger = logging.getLogger(__name__)

EngineCreator = Callable[[str], Awaitable[str]]


class EnginePool:
    """
    Registry of engine name -> lease count.

    Every key is an engine that is provisioned or being provisioned. A lease
    count never goes negative and never exceeds ``concurrency``. Only
    ``resize`` adds or removes engines.
    """

    def __init__(
        self,
        provisioning: ProvisioningClient,
        *,
        concurrency: Optional[int] = None,
        engine_size: Optional[str] = None,
        name_generator: Optional[NameGenerator] = None,
        creator: Optional[EngineCreator] = None,
        acquire_backoff_sec: Optional[float] = None,
        provision_timeout_sec: Optional[float] = None,
        provision_poll_sec: float = 1.0,
    ):
        """
        Initialize the engine pool.

        Args:
            provisioning: Client used to create, inspect and delete engines
            concurrency: Max simultaneous leases per engine
            engine_size: Size passed when creating engines
            name_generator: Maps a unique id to an engine name
            creator: Coroutine that provisions an engine and returns its name
            acquire_backoff_sec: Sleep between scans while every engine is busy
            provision_timeout_sec: Budget for an engine to become PROVISIONED
            provision_poll_sec: Interval between provisioning state checks
        """
        self.provisioning = provisioning
        self.concurrency = int(
            settings.ENGINE_CONCURRENCY if concurrency is None else concurrency
        )
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1: {self.concurrency}")
        self.engine_size = engine_size or settings.ENGINE_SIZE
        self.name_generator: NameGenerator = name_generator or default_engine_name
        self.creator: EngineCreator = creator or self._create_and_wait
        self.acquire_backoff_sec = (
            settings.ACQUIRE_BACKOFF_SEC
            if acquire_backoff_sec is None
            else float(acquire_backoff_sec)
        )
        self.provision_timeout_sec = (
            settings.ENGINE_PROVISION_TIMEOUT_SEC
            if provision_timeout_sec is None
            else float(provision_timeout_sec)
        )
        self.provision_poll_sec = float(provision_poll_sec)

        self._engines: Dict[str, int] = {}
        self._ids = count(1)
        # acquire() callers queue on the admission lock. The pool lock guards the
        # mapping and is never held across network calls.
        self._admission_lock = asyncio.Lock()
        self._lock = asyncio.Lock()
        self._resize_lock = asyncio.Lock()

    @property
    def size(self) -> int:
        return len(self._engines)

    def leases(self, name: str) -> Optional[int]:
        return self._engines.get(name)

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    async def acquire(self, name: Optional[str] = None) -> str:
        """
        Lease an engine.

        An explicit ``name`` is returned unchecked and is not counted as a lease.
        Otherwise the least loaded engine below the concurrency limit is leased,
        sleeping ``acquire_backoff_sec`` between scans while all are busy.

        Raises:
            NoEngineAvailable: If the pool is empty
        """
        if name is not None:
            return name

        async with self._admission_lock:
            while True:
                async with self._lock:
                    if not self._engines:
                        raise NoEngineAvailable("No engines available in the pool")

                    candidates = [
                        (leases, engine_name)
                        for engine_name, leases in self._engines.items()
                        if leases < self.concurrency
                    ]
                    if candidates:
                        leases, engine_name = min(candidates, key=lambda c: c[0])
                        self._engines[engine_name] = leases + 1
                        logger.debug(
                            f"Leased engine {engine_name} ({leases + 1}/{self.concurrency})"
                        )
                        return engine_name

                await asyncio.sleep(self.acquire_backoff_sec)

    async def release(self, name: str) -> None:
        """Return a lease. Unknown names (already evicted or resized away) are ignored."""
        async with self._lock:
            leases = self._engines.get(name)
            if leases is None:
                return
            self._engines[name] = max(0, leases - 1)
            logger.debug(f"Released engine {name} ({self._engines[name]}/{self.concurrency})")

    async def checkout(self) -> str:
        """
        Lease an engine and make sure it exists remotely.

        A leased name whose engine is missing is created on demand. If that
        fails the lease is returned before the error propagates.
        """
        name = await self.acquire()
        try:
            return await self.ensure_engine(name)
        except BaseException:
            await self.release(name)
            raise

    @asynccontextmanager
    async def lease(self, name: Optional[str] = None) -> AsyncIterator[str]:
        """
        Scoped lease. Explicitly named engines are used as-is and never released.

        Usage:
            async with pool.lease() as engine:
                ...
        """
        if name is not None:
            yield name
            return

        engine = await self.checkout()
        try:
            yield engine
        finally:
            await self.release(engine)

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def ensure_engine(self, name: str) -> str:
        """Return ``name`` once the engine is usable, creating it if it does not exist."""
        try:
            info = await self.provisioning.get_engine(name)
        except Exception as e:
            if not is_not_found(e):
                raise
            logger.info(f"Engine {name} does not exist yet, creating it")
            return await self.creator(name)

        if info.state == EngineState.PROVISIONED:
            return name
        if info.state == EngineState.PROVISION_FAILED:
            raise ProvisionFailed(name, "remote state is PROVISION_FAILED")
        return await self._wait_till_provisioned(name)

    async def _create_and_wait(self, name: str) -> str:
        await self.provisioning.create_engine(name, self.engine_size)
        return await self._wait_till_provisioned(name)

    async def _wait_till_provisioned(self, name: str) -> str:
        start = time.monotonic()
        info = await self.provisioning.get_engine(name)
        while info.state != EngineState.PROVISIONED:
            if info.state == EngineState.PROVISION_FAILED:
                raise ProvisionFailed(name, "remote state is PROVISION_FAILED")
            if time.monotonic() - start > self.provision_timeout_sec:
                raise ProvisionFailed(
                    name,
                    f"not provisioned within {self.provision_timeout_sec} seconds "
                    f"(state {info.state.value})",
                )
            await asyncio.sleep(self.provision_poll_sec)
            info = await self.provisioning.get_engine(name)

        logger.info(f"Engine {name} is provisioned")
        return info.name

    async def provision_all(self) -> None:
        """Provision every engine currently in the pool. Failures are logged."""
        async with self._lock:
            names = list(self._engines)

        outcomes = await asyncio.gather(
            *(self.ensure_engine(n) for n in names), return_exceptions=True
        )
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Failed to provision engine {name}: {outcome}")

    async def _is_valid(self, name: str) -> bool:
        """Whether the engine exists and is PROVISIONED. Never raises."""
        try:
            start = time.monotonic()
            info = await self.provisioning.get_engine(name)
            while info.state.is_transitional:
                if time.monotonic() - start > self.provision_timeout_sec:
                    break
                logger.info(f"Waiting for engine {name} to be provisioned...")
                await asyncio.sleep(self.provision_poll_sec)
                info = await self.provisioning.get_engine(name)
            return info.state == EngineState.PROVISIONED
        except Exception as e:
            if is_not_found(e):
                logger.info(f"Engine {name} no longer exists")
            else:
                logger.warning(f"Validation of engine {name} failed: {e}")
            return False

    async def _delete_quietly(self, name: str) -> None:
        # The engine may never have been created, or already be gone.
        try:
            await self.provisioning.delete_engine(name)
            logger.info(f"Deleted engine {name}")
        except Exception as e:
            logger.info(f"Could not delete engine {name}: {e}")

    async def _evict(self, names: List[str]) -> None:
        if not names:
            return
        async with self._lock:
            for name in names:
                self._engines.pop(name, None)
        await asyncio.gather(*(self._delete_quietly(n) for n in names))

    # ------------------------------------------------------------------
    # Resizing
    # ------------------------------------------------------------------

    async def resize(
        self, target_size: int, name_generator: Optional[NameGenerator] = None
    ) -> None:
        """
        Resize the pool to ``target_size`` engines.

        New engines are named by ``name_generator`` (which also becomes the
        pool's generator) and provisioned concurrently; engines that fail to
        provision are dropped. Every remaining engine is then validated and
        evicted if it is not PROVISIONED. Finally, surplus engines are removed,
        free ones first, and deleted remotely.

        Raises:
            DuplicateEngineName: If the generator repeats a name already in use
        """
        target_size = max(0, int(target_size))

        async with self._resize_lock:
            if name_generator is not None:
                self.name_generator = name_generator
            await self._grow(target_size)
            await self._validate()
            await self._shrink(target_size)

        logger.info(f"Engine pool resized to {self.size} (target {target_size})")

    async def _grow(self, target_size: int) -> None:
        async with self._lock:
            new_names: List[str] = []
            taken = set(self._engines)
            while len(self._engines) + len(new_names) < target_size:
                candidate = self.name_generator(next(self._ids))
                if candidate in taken:
                    raise DuplicateEngineName(candidate)
                taken.add(candidate)
                new_names.append(candidate)
            for name in new_names:
                self._engines[name] = 0

        if not new_names:
            return

        logger.info(f"Provisioning {len(new_names)} engines: {', '.join(new_names)}")
        outcomes = await asyncio.gather(
            *(self.creator(n) for n in new_names), return_exceptions=True
        )
        failed = []
        for name, outcome in zip(new_names, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Dropping engine {name} from the pool: {outcome}")
                failed.append(name)
        await self._evict(failed)

    async def _validate(self) -> None:
        async with self._lock:
            names = list(self._engines)

        verdicts = await asyncio.gather(*(self._is_valid(n) for n in names))
        invalid = [n for n, ok in zip(names, verdicts) if not ok]
        if invalid:
            logger.warning(f"Evicting invalid engines: {', '.join(invalid)}")
        await self._evict(invalid)

    async def _shrink(self, target_size: int) -> None:
        async with self._lock:
            removed: List[str] = []
            by_load = sorted(self._engines, key=lambda n: self._engines[n])
            while len(self._engines) > target_size:
                name = by_load.pop(0)
                del self._engines[name]
                removed.append(name)

        for name in removed:
            logger.info(f"Deleting engine {name}")
        await asyncio.gather(*(self._delete_quietly(n) for n in removed))

    async def destroy_all(self) -> None:
        """Delete every engine and resize the pool to zero."""
        await self.resize(0)
        logger.info("Destroyed all test engines")

    async def list_engines(self) -> Dict[str, int]:
        async with self._lock:
            return dict(self._engines)

    async def get_pool_stats(self) -> Dict[str, Any]:
        """
        Get engine pool statistics.

        Returns:
            Dict with pool statistics
        """
        async with self._lock:
            in_use = sum(1 for leases in self._engines.values() if leases > 0)
            return {
                "size": len(self._engines),
                "in_use": in_use,
                "free": len(self._engines) - in_use,
                "leases": sum(self._engines.values()),
                "concurrency": self.concurrency,
            }
