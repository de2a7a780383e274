"""
Bounded asyncio worker pool for bulk update jobs.

A fixed number of worker tasks consume one queue. Admission is bounded by
a slot semaphore sized ``worker_count + queue_capacity``: a slot is held
from admission until the unit of work finishes, so at most
``worker_count`` units run and at most ``queue_capacity`` wait.

When no slot is free the admission policy decides:
    block  - the caller waits for a slot (optionally with a timeout)
    reject - the caller gets CapacityError immediately
"""

from typing import Any, Awaitable, Callable, List, Optional, Tuple
import asyncio
import enum
import logging

from core.exceptions import CapacityError

logger = logging.getLogger(__name__)

Work = Callable[[], Awaitable[Any]]


class AdmissionPolicy(str, enum.Enum):
    """What submit does when the backlog is full"""
    BLOCK = "block"
    REJECT = "reject"


class WorkerPool:
    """
    Fixed-size pool of asyncio worker tasks with a bounded backlog.

    Usage:
        pool = WorkerPool(worker_count=5, queue_capacity=50)
        await pool.start()
        future = await pool.submit(some_coroutine_function)
        result = await future
        await pool.stop()
    """

    def __init__(
        self,
        worker_count: int,
        queue_capacity: int,
        admission_policy: AdmissionPolicy = AdmissionPolicy.REJECT,
        submit_timeout: Optional[float] = None,
        name: str = "bulk-worker"
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if queue_capacity < 0:
            raise ValueError("queue_capacity must not be negative")

        self.worker_count = worker_count
        self.queue_capacity = queue_capacity
        self.admission_policy = AdmissionPolicy(admission_policy)
        self.submit_timeout = submit_timeout
        self.name = name

        self._slots = asyncio.Semaphore(worker_count + queue_capacity)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []

        self.active_count = 0
        self.peak_active = 0

    @property
    def capacity(self) -> int:
        return self.worker_count + self.queue_capacity

    @property
    def backlog_size(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"{self.name}-{index}")
            for index in range(self.worker_count)
        ]
        logger.info(
            f"Worker pool started: {self.worker_count} workers, "
            f"backlog {self.queue_capacity}, policy {self.admission_policy.value}"
        )

    async def stop(self) -> None:
        """Cancel the workers. Work still queued is abandoned."""
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        while not self._queue.empty():
            future, _, _ = self._queue.get_nowait()
            if not future.done():
                future.cancel()
            self._slots.release()

        logger.info("Worker pool stopped")

    async def acquire_slot(self) -> None:
        """Reserve capacity for one unit of work, applying the admission policy."""
        if self.admission_policy is AdmissionPolicy.REJECT:
            if self._slots.locked():
                raise CapacityError(
                    "Bulk update backlog is full",
                    context={"policy": self.admission_policy.value, "capacity": self.capacity}
                )
            await self._slots.acquire()
            return

        try:
            if self.submit_timeout is None:
                await self._slots.acquire()
            else:
                await asyncio.wait_for(self._slots.acquire(), self.submit_timeout)
        except asyncio.TimeoutError:
            raise CapacityError(
                "Timed out waiting for bulk update capacity",
                context={
                    "policy": self.admission_policy.value,
                    "capacity": self.capacity,
                    "timeout_seconds": self.submit_timeout
                }
            )

    def release_slot(self) -> None:
        """Give back a slot that was reserved but never dispatched."""
        self._slots.release()

    def dispatch(self, work: Work, name: str = "") -> asyncio.Future:
        """Queue work for a slot already reserved with acquire_slot()."""
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((future, work, name))
        return future

    async def submit(self, work: Work, name: str = "") -> asyncio.Future:
        """Reserve a slot and queue the work; returns a future for its result."""
        await self.acquire_slot()
        return self.dispatch(work, name)

    async def _worker(self, index: int) -> None:
        while True:
            future, work, name = await self._queue.get()
            try:
                if future.cancelled():
                    continue

                self.active_count += 1
                self.peak_active = max(self.peak_active, self.active_count)
                logger.debug(f"{self.name}-{index} picked up {name or 'work'}")

                try:
                    result = await work()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as e:
                    logger.exception(f"{self.name}-{index}: unhandled error in {name or 'work'}")
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
                finally:
                    self.active_count -= 1
            finally:
                self._slots.release()
                self._queue.task_done()

    def stats(self) -> dict:
        return {
            "workers": self.worker_count,
            "active": self.active_count,
            "backlog": self.backlog_size,
            "queue_capacity": self.queue_capacity,
            "admission_policy": self.admission_policy.value,
        }
