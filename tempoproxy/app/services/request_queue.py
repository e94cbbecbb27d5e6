"""FIFO request queue with concurrency control.

The queue limits how many upstream calls run at once. Requests beyond the
concurrency limit wait in strict arrival order; requests beyond the queue
size are rejected immediately so the proxy never accepts unbounded load.
"""

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Generic, TypeVar

from tempoproxy.app.core.logging import get_logger
from tempoproxy.app.exceptions import CapacityExceededError

logger = get_logger(__name__)

T = TypeVar("T")

Work = Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class QueueConfig:
    """Queue limits."""
    max_concurrent: int = 5
    max_queue_size: int = 100


@dataclass(frozen=True)
class QueueStatus:
    """Point-in-time snapshot of the queue."""
    pending: int
    active: int


@dataclass(eq=False)
class QueuedTask(Generic[T]):
    """A unit of work waiting for a concurrency slot."""
    work: Work
    future: "asyncio.Future[T]"
    enqueued_at: float = field(default_factory=time.monotonic)


class RequestQueue:
    """Bounded-concurrency FIFO scheduler for upstream calls.

    State transitions (admit, enqueue, release-and-promote) happen under a
    lock that is only held inside synchronous sections, never across an
    await. A freed slot is handed to exactly one pending task.

    Usage:
        queue = RequestQueue(max_concurrent=5, max_queue_size=100)
        try:
            result = await queue.enqueue(lambda: provider.chat_completion(body))
        except CapacityExceededError:
            ...  # map to 503
    """

    def __init__(self, max_concurrent: int = 5, max_queue_size: int = 100):
        """Initialize the queue.

        Args:
            max_concurrent: Maximum tasks executing at the same time
            max_queue_size: Maximum tasks waiting for a slot
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if max_queue_size < 0:
            raise ValueError("max_queue_size must not be negative")

        self._config = QueueConfig(max_concurrent=max_concurrent, max_queue_size=max_queue_size)
        self._pending: Deque[QueuedTask[Any]] = deque()
        self._active = 0
        # Synchronous lock: _release runs in finally blocks, including during
        # cancellation, where awaiting an asyncio.Lock could be interrupted
        self._state_lock = threading.Lock()

        # Counters for monitoring
        self._total_dispatched = 0
        self._total_rejected = 0
        self._total_cancelled = 0

        # Strong references to dispatched tasks until they finish
        self._running: set[asyncio.Task] = set()

    async def enqueue(self, work: Work[T]) -> T:
        """Run ``work`` once a concurrency slot is free.

        Args:
            work: Zero-argument coroutine function to execute

        Returns:
            Whatever ``work`` returns

        Raises:
            CapacityExceededError: If the pending queue is already full
            Exception: Whatever ``work`` raises
        """
        with self._state_lock:
            if len(self._pending) >= self._config.max_queue_size:
                self._total_rejected += 1
                pending = len(self._pending)
                raise CapacityExceededError(
                    pending=pending, max_queue_size=self._config.max_queue_size
                )

            if self._active < self._config.max_concurrent:
                self._active += 1
                self._total_dispatched += 1
                queued = None
            else:
                future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
                queued = QueuedTask(work=work, future=future)
                self._pending.append(queued)
                position = len(self._pending)

        if queued is None:
            try:
                return await work()
            finally:
                self._release()

        logger.debug(f"Request queued at position {position}")
        try:
            return await queued.future
        except asyncio.CancelledError:
            with self._state_lock:
                if queued in self._pending:
                    self._pending.remove(queued)
                    self._total_cancelled += 1
            raise

    async def _run(self, task: QueuedTask[Any]) -> None:
        """Execute a promoted task and settle its future."""
        try:
            result = await task.work()
        except asyncio.CancelledError:
            task.future.cancel()
            raise
        except Exception as exc:
            if not task.future.done():
                task.future.set_exception(exc)
        else:
            if not task.future.done():
                task.future.set_result(result)
        finally:
            self._release()

    def _release(self) -> None:
        """Free a slot and promote pending heads into the free slots."""
        promoted = []
        with self._state_lock:
            self._active -= 1
            while self._pending and self._active < self._config.max_concurrent:
                task = self._pending.popleft()
                if task.future.done():
                    # Waiter went away before dispatch
                    self._total_cancelled += 1
                    continue
                self._active += 1
                self._total_dispatched += 1
                promoted.append(task)

        for task in promoted:
            waited_ms = (time.monotonic() - task.enqueued_at) * 1000
            logger.debug(f"Dispatching queued request after {waited_ms:.0f}ms")
            runner = task.future.get_loop().create_task(self._run(task))
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)

    def get_status(self) -> QueueStatus:
        """Consistent snapshot of pending and active counts."""
        with self._state_lock:
            return QueueStatus(pending=len(self._pending), active=self._active)

    def has_capacity(self) -> bool:
        """True if an enqueue would start executing immediately."""
        with self._state_lock:
            return self._active < self._config.max_concurrent

    def can_accept(self) -> bool:
        """True if an enqueue would be accepted (possibly queued)."""
        with self._state_lock:
            return len(self._pending) < self._config.max_queue_size

    def get_config(self) -> QueueConfig:
        return self._config

    def get_stats(self) -> Dict[str, Any]:
        """Get current queue statistics."""
        with self._state_lock:
            pending = len(self._pending)
            active = self._active
            return {
                "pending": pending,
                "active": active,
                "max_concurrent": self._config.max_concurrent,
                "max_queue_size": self._config.max_queue_size,
                "utilization": round(active / self._config.max_concurrent, 4),
                "total_dispatched": self._total_dispatched,
                "total_rejected": self._total_rejected,
                "total_cancelled": self._total_cancelled,
            }
