"""
Operation Lock - mutual exclusion for queue-changing DJ operations

Two acquisition modes:
  * try_acquire(): eager, never waits. Rescue uses it so the lock is taken
    before the first await.
  * acquire(run): cooperative, waits for the current holder and then runs
    the coroutine under the lock. Expansion waits instead of competing.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationLock:
    """Single-holder lock for one event loop"""

    def __init__(self):
        self._holder: Optional[str] = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def locked(self) -> bool:
        return self._holder is not None

    @property
    def holder(self) -> Optional[str]:
        return self._holder

    def try_acquire(self, owner: str) -> bool:
        """Take the lock if it is free; synchronous, so no other task can interleave"""
        if self._holder is not None:
            logger.debug(f"{owner} could not take lock held by {self._holder}")
            return False
        self._holder = owner
        self._idle.clear()
        logger.debug(f"Lock taken by {owner}")
        return True

    def release(self, owner: str) -> None:
        if self._holder != owner:
            logger.warning(f"{owner} tried to release lock held by {self._holder}")
            return
        self._holder = None
        self._idle.set()
        logger.debug(f"Lock released by {owner}")

    async def wait_for_current(self) -> None:
        """Return once nobody holds the lock, without taking it"""
        await self._idle.wait()

    async def acquire(self, run: Callable[[], Awaitable[T]], owner: str) -> T:
        """Wait for the lock, run `run()` while holding it, always release"""
        while not self.try_acquire(owner):
            await self._idle.wait()
        try:
            return await run()
        finally:
            self.release(owner)
