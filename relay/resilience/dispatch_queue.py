"""
Dispatch queue for outbound sends.

Request handlers enqueue send actions and return immediately; a single
background consumer drains the queue in fixed-size batches. Tasks in a batch
run concurrently, the whole batch finishes before the next one starts, and a
pacing delay separates consecutive batches so the upstream API never sees
more than batch_size concurrent calls.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from relay.errors import DispatchQueueClosed
from relay.observability.logging import get_logger
from relay.observability.metrics import (
    dispatch_batch_duration_seconds,
    dispatch_queue_depth,
    dispatch_tasks_total,
)
from relay.observability.tracing import get_tracer


logger = get_logger(__name__)
tracer = get_tracer(__name__)

# Wakes an idle consumer so it can observe shutdown
_STOP = object()


@dataclass
class DispatchTask:
    """A queued unit of outbound work and its outcome."""
    name: str
    action: Callable[[], Awaitable[Any]]
    enqueued_at: float = field(default_factory=time.monotonic)
    batch: Optional[int] = None
    status: str = "pending"  # pending, succeeded, failed, timed_out
    error: Optional[str] = None


class DispatchQueue:
    """
    FIFO queue of send actions drained in paced batches by one worker.

    Lifecycle:
        start() spawns the consumer. stop(drain=True) refuses new tasks,
        waits for everything already queued, then lets the consumer exit.
        stop(drain=False) lets only the batch in progress finish.
    """

    def __init__(
        self,
        batch_size: int = 5,
        pacing_ms: int = 200,
        task_timeout_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.batch_size = batch_size
        self.pacing_seconds = pacing_ms / 1000
        self.task_timeout_seconds = task_timeout_seconds
        self._sleep = sleep

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False
        self._stopping = False

        self.batches_processed = 0
        self.tasks_succeeded = 0
        self.tasks_failed = 0

    @property
    def depth(self) -> int:
        """Tasks waiting to be picked up by the consumer."""
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def enqueue(self, action: Callable[[], Awaitable[Any]], name: str = "task") -> DispatchTask:
        """
        Append a send action to the tail of the queue without waiting.

        Args:
            action: Zero-argument coroutine function performing the send
            name: Label used in logs

        Returns:
            DispatchTask: Handle whose status is updated once it has run

        Raises:
            DispatchQueueClosed: If shutdown has begun
        """
        if self._closed:
            raise DispatchQueueClosed()

        task = DispatchTask(name=name, action=action)
        self._queue.put_nowait(task)
        dispatch_queue_depth.set(self._queue.qsize())
        return task

    async def start(self) -> None:
        """Start the background consumer."""
        if self.running:
            return
        self._discard_stale_stops()
        self._closed = False
        self._stopping = False
        self._worker = asyncio.create_task(self._consume(), name="dispatch-queue")
        logger.info(
            "Dispatch queue started",
            batch_size=self.batch_size,
            pacing_seconds=self.pacing_seconds,
        )

    async def join(self) -> None:
        """Wait until every enqueued task has been processed."""
        await self._queue.join()

    async def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop accepting tasks and shut the consumer down gracefully.

        Args:
            drain: Process all pending tasks before stopping
            timeout: Upper bound in seconds on the drain wait
        """
        self._closed = True
        if self._worker is None:
            return

        if drain:
            try:
                await asyncio.wait_for(self._queue.join(), timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Dispatch queue drain timed out, abandoning pending tasks",
                    pending=self.depth,
                )
                self._stopping = True
        else:
            self._stopping = True

        self._queue.put_nowait(_STOP)
        await self._worker
        self._worker = None
        logger.info(
            "Dispatch queue stopped",
            batches=self.batches_processed,
            succeeded=self.tasks_succeeded,
            failed=self.tasks_failed,
            abandoned=self.depth,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "accepting": not self._closed,
            "depth": self.depth,
            "batch_size": self.batch_size,
            "pacing_seconds": self.pacing_seconds,
            "batches_processed": self.batches_processed,
            "tasks_succeeded": self.tasks_succeeded,
            "tasks_failed": self.tasks_failed,
        }

    def _discard_stale_stops(self) -> None:
        # A consumer that exited early leaves its stop marker behind the
        # abandoned tasks; keep the tasks in order, drop the markers.
        pending = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not _STOP:
                pending.append(item)
            self._queue.task_done()

        for item in pending:
            self._queue.put_nowait(item)
        dispatch_queue_depth.set(self._queue.qsize())

    async def _consume(self) -> None:
        while True:
            # Blocks while the queue is empty
            first = await self._queue.get()
            if first is _STOP:
                self._queue.task_done()
                return

            batch: List[DispatchTask] = [first]
            stop_after = False
            while len(batch) < self.batch_size:
                try:
                    item = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if item is _STOP:
                    self._queue.task_done()
                    stop_after = True
                    break
                batch.append(item)

            dispatch_queue_depth.set(self._queue.qsize())
            await self._run_batch(batch)

            if stop_after or self._stopping:
                return
            await self._sleep(self.pacing_seconds)

    async def _run_batch(self, batch: List[DispatchTask]) -> None:
        self.batches_processed += 1
        batch_number = self.batches_processed
        start_time = time.perf_counter()

        with tracer.start_as_current_span("dispatch_batch") as span:
            span.set_attribute("batch_number", batch_number)
            span.set_attribute("batch_size", len(batch))
            await asyncio.gather(*(self._run_task(task, batch_number) for task in batch))

        dispatch_batch_duration_seconds.observe(time.perf_counter() - start_time)
        logger.debug(
            "Dispatch batch completed",
            batch_number=batch_number,
            size=len(batch),
        )

    async def _run_task(self, task: DispatchTask, batch_number: int) -> None:
        task.batch = batch_number
        try:
            await asyncio.wait_for(task.action(), self.task_timeout_seconds)
            task.status = "succeeded"
            self.tasks_succeeded += 1
        except asyncio.TimeoutError:
            task.status = "timed_out"
            task.error = f"timed out after {self.task_timeout_seconds}s"
            self.tasks_failed += 1
            logger.error("Dispatch task timed out", task=task.name, batch_number=batch_number)
        except Exception as e:
            task.status = "failed"
            task.error = str(e)
            self.tasks_failed += 1
            logger.error(
                "Dispatch task failed",
                task=task.name,
                batch_number=batch_number,
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            dispatch_tasks_total.labels(status=task.status).inc()
            self._queue.task_done()
