"""Dedicated worker threads for blocking engine and file work.

The runtime keeps three logically separate pools so that a long generation
never starves model loading and vice versa:

* ``lifecycle`` runs a **single** thread; every engine construction and
  destruction goes through it.
* ``file-io`` is a small bounded pool for copying and inspecting model files.
* ``inference`` is sized to the CPU and runs the blocking generation calls.

Async callers submit work through thread-safe queues and await the result
without blocking the event loop.
"""

from __future__ import annotations

import asyncio
import gc
import queue
import threading
from threading import Thread
from typing import Any, Callable

from loguru import logger


def _safe_set_result(future: asyncio.Future[Any], result: Any) -> None:
    """Set *result* on *future*, silently ignoring if already done.

    This avoids ``InvalidStateError`` when the caller gave up (and the
    future was cancelled) but the work closure completes later.
    """
    if not future.done():
        try:
            future.set_result(result)
        except asyncio.InvalidStateError:
            pass


def _safe_set_exception(future: asyncio.Future[Any], exc: BaseException) -> None:
    """Set *exc* on *future*, silently ignoring if already done."""
    if not future.done():
        try:
            future.set_exception(exc)
        except asyncio.InvalidStateError:
            pass


class _WorkItem:
    """A queued callable bound to the event-loop future awaiting it."""

    __slots__ = ("args", "func", "future", "kwargs", "loop")

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        future: asyncio.Future[Any],
        func: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> None:
        self.loop = loop
        self.future = future
        self.func = func
        self.args = args
        self.kwargs = kwargs

    def run(self) -> bool:
        """Execute the callable and forward its outcome; return True on success."""
        try:
            result = self.func(*self.args, **self.kwargs)
        except BaseException as exc:
            self._forward(_safe_set_exception, exc)
            return False
        self._forward(_safe_set_result, result)
        return True

    def abandon(self, exc: BaseException) -> None:
        """Fail the waiting future without running the callable."""
        self._forward(_safe_set_exception, exc)

    def _forward(self, setter: Callable[[asyncio.Future[Any], Any], None], value: Any) -> None:
        try:
            self.loop.call_soon_threadsafe(setter, self.future, value)
        except RuntimeError:
            # The owning event loop is already closed; nobody is waiting.
            pass


class WorkerPool:
    """Fixed set of named threads executing blocking callables in FIFO order.

    Usage
    -----
    >>> pool = WorkerPool("inference", max_workers=4)
    >>> pool.start()
    >>> text = await pool.submit(handle.generate, prompt)
    >>> pool.stop()
    """

    def __init__(
        self,
        name: str,
        max_workers: int = 1,
        *,
        queue_size: int = 0,
        timeout: float | None = None,
        collect_garbage: bool = False,
    ) -> None:
        """Initialize the pool.

        Parameters
        ----------
        name : str
            Pool name, used for thread names and log messages.
        max_workers : int
            Number of worker threads. ``1`` gives strictly serialized
            execution.
        queue_size : int
            Maximum number of pending work items; ``0`` means unbounded.
            When full, ``submit`` raises ``asyncio.QueueFull``.
        timeout : float | None
            Default timeout in seconds for ``submit``. ``None`` waits
            forever.
        collect_garbage : bool
            Run ``gc.collect()`` after every work item. Useful for the
            lifecycle pool, where engines are torn down.
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.name = name
        self._max_workers = max_workers
        self._queue_size = queue_size
        self._timeout = timeout
        self._collect_garbage = collect_garbage
        self._work_queue: queue.Queue[_WorkItem] = queue.Queue(maxsize=queue_size)
        self._threads: list[Thread] = []
        self._running = False

        self._stats_lock = threading.Lock()
        self._active = 0
        self._completed_count = 0
        self._failed_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the worker threads. Subsequent calls are no-ops."""
        if self._running:
            return
        self._running = True
        for index in range(self._max_workers):
            thread = Thread(target=self._run, daemon=True, name=f"{self.name}-worker-{index}")
            thread.start()
            self._threads.append(thread)
        logger.info(f"Worker pool '{self.name}' started with {self._max_workers} thread(s)")

    def stop(self, join_timeout: float = 5.0) -> None:
        """Stop the worker threads and fail any work that never started.

        Threads still inside a blocking call are left to finish on their
        own (they are daemon threads); they are never forcibly killed.
        """
        if not self._running:
            return
        self._running = False
        for thread in self._threads:
            thread.join(timeout=join_timeout)
        self._threads = []

        pending = 0
        while True:
            try:
                item = self._work_queue.get_nowait()
            except queue.Empty:
                break
            item.abandon(RuntimeError(f"Worker pool '{self.name}' stopped"))
            pending += 1
        if pending:
            logger.warning(f"Worker pool '{self.name}' dropped {pending} pending item(s)")
        logger.info(f"Worker pool '{self.name}' stopped")

    # ------------------------------------------------------------------
    # Internal thread loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while self._running:
            try:
                item = self._work_queue.get(timeout=0.1)
            except queue.Empty:
                continue

            ok = False
            with self._stats_lock:
                self._active += 1
            try:
                ok = item.run()
            finally:
                with self._stats_lock:
                    self._active -= 1
                    if ok:
                        self._completed_count += 1
                    else:
                        self._failed_count += 1
                if self._collect_garbage:
                    gc.collect()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def schedule(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> asyncio.Future[Any]:
        """Queue a blocking callable and return the future that receives its result.

        Cancelling the returned future does not stop the callable; the
        worker runs it to completion and the outcome is discarded.

        Raises
        ------
        RuntimeError
            If the pool is not running.
        asyncio.QueueFull
            If the work queue has reached its capacity.
        """
        if not self._running:
            raise RuntimeError(f"Worker pool '{self.name}' is not running")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        try:
            self._work_queue.put_nowait(_WorkItem(loop, future, func, args, kwargs))
        except queue.Full:
            raise asyncio.QueueFull(f"Worker pool '{self.name}' queue is full") from None
        return future

    async def submit(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking callable on the pool and ``await`` its result.

        Raises
        ------
        TimeoutError
            If a default timeout is configured and the result is late.
        Exception
            Any exception raised by *func* is re-raised in the caller.
        """
        future = self.schedule(func, *args, **kwargs)
        if self._timeout is None:
            return await future
        try:
            return await asyncio.wait_for(future, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"Worker pool '{self.name}' timed out after {self._timeout}s"
            ) from None

    def get_stats(self) -> dict[str, Any]:
        """Return a snapshot of queue depth and completion counters."""
        with self._stats_lock:
            return {
                "name": self.name,
                "running": self._running,
                "workers": self._max_workers,
                "queue_size": self._work_queue.qsize(),
                "max_queue_size": self._queue_size,
                "active_requests": self._active,
                "completed_requests": self._completed_count,
                "failed_requests": self._failed_count,
            }
