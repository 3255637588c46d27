"""Resource arbiter: at most one capability holds the accelerator.

use(kind, setup) leases a ready handle for the length of one stage. It
either reuses the resident handle (same kind, still open) or disposes the
resident handle, clears residency, and only then runs setup() for the new
one. The lease holds the arbiter lock, so no other caller can switch
capabilities while a stage is still running on the handle.

Disposal failures are logged and never block the switch. Allocation
failures during setup surface as ResourceExhaustedError; anything else
propagates untouched.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional

from .capability import CapabilityHandle
from .errors import ResourceExhaustedError, is_out_of_memory
from .types import CapabilityKind

log = logging.getLogger("arbiter")

# listener(kind, phase) with phase in initializing/ready/released
LifecycleCallback = Callable[[CapabilityKind, str], None]


class ResourceArbiter:
    """Owns residency. All capability construction goes through use()."""

    def __init__(self, on_event: Optional[LifecycleCallback] = None):
        self._listeners: List[LifecycleCallback] = []
        if on_event is not None:
            self._listeners.append(on_event)
        self._lock = asyncio.Lock()
        self._handle: Optional[CapabilityHandle] = None
        self._kind: Optional[CapabilityKind] = None

    @property
    def resident_kind(self) -> Optional[CapabilityKind]:
        return self._kind

    @property
    def resident(self) -> Optional[CapabilityHandle]:
        return self._handle

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def subscribe(self, listener: LifecycleCallback):
        self._listeners.append(listener)

    def unsubscribe(self, listener: LifecycleCallback):
        try:
            self._listeners.remove(listener)
        except ValueError:
            log.debug("Listener was not subscribed")

    def _notify(self, kind: CapabilityKind, phase: str):
        for listener in list(self._listeners):
            try:
                listener(kind, phase)
            except Exception:
                log.exception("Lifecycle callback failed (%s %s)", kind.value, phase)

    @asynccontextmanager
    async def use(self, kind: CapabilityKind, setup: Callable[[], CapabilityHandle]) -> AsyncIterator[CapabilityHandle]:
        """Lease a ready handle for kind until the block exits."""
        async with self._lock:
            yield await self._acquire_locked(kind, setup)

    async def acquire(self, kind: CapabilityKind, setup: Callable[[], CapabilityHandle]) -> CapabilityHandle:
        """Make kind resident and return its handle without holding a lease.

        The handle may be disposed by the next caller that switches kinds.
        """
        async with self._lock:
            return await self._acquire_locked(kind, setup)

    async def _acquire_locked(self, kind: CapabilityKind, setup: Callable[[], CapabilityHandle]) -> CapabilityHandle:
        if self._kind == kind and self._handle is not None and not self._handle.closed:
            return self._handle

        await self._release_locked()

        log.info("Initializing %s...", kind.value)
        self._notify(kind, "initializing")
        loop = asyncio.get_running_loop()
        try:
            handle = await loop.run_in_executor(None, setup)
        except Exception as e:
            if is_out_of_memory(e):
                log.error("Out of memory while initializing %s: %s", kind.value, e)
                raise ResourceExhaustedError() from e
            raise

        self._handle = handle
        self._kind = kind
        log.info("%s ready", kind.value)
        self._notify(kind, "ready")
        return handle

    async def release(self):
        """Dispose whatever is resident. Used for teardown and preload."""
        async with self._lock:
            await self._release_locked()

    async def _release_locked(self):
        handle, kind = self._handle, self._kind
        if handle is None:
            return
        log.info("Releasing previous %s pipeline...", kind.value)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, handle.dispose)
        except Exception as e:
            log.warning("Cleanup warning while releasing %s: %s", kind.value, e)
        finally:
            self._handle = None
            self._kind = None
        self._notify(kind, "released")
