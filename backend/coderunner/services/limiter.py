import asyncio
from collections import deque

from coderunner.core.errors import QueueFullError


class ExecutionLimiter:
    """Caps concurrent executions; callers beyond the cap wait in FIFO order."""

    def __init__(self, max_concurrent: int = 10, max_waiting: int = 100):
        self.max_concurrent = max_concurrent
        self.max_waiting = max_waiting
        self.active = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def waiting(self) -> int:
        return sum(1 for f in self._waiters if not f.done())

    async def acquire(self):
        if self.active < self.max_concurrent and not self.waiting:
            self.active += 1
            return
        if self.waiting >= self.max_waiting:
            raise QueueFullError("Execution queue is full")
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            # slot handed over just before cancellation: pass it on
            if fut.done() and not fut.cancelled():
                self.release()
            raise

    def release(self):
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self.active = max(0, self.active - 1)

    def stats(self) -> dict:
        return {
            "active": self.active,
            "waiting": self.waiting,
            "max_concurrent": self.max_concurrent,
        }

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, *exc):
        self.release()
