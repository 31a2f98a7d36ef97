"""Tests for the thread-backed WorkerPool."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from spark_runtime.core.worker_pool import WorkerPool
from tests.conftest import wait_until


@pytest.mark.asyncio
async def test_submit_returns_result_and_counts_completion() -> None:
    """Ensure submit returns the callable's result and updates counters."""
    pool = WorkerPool("test", 2)
    pool.start()
    try:
        assert await pool.submit(lambda x, y: x + y, 2, y=3) == 5
        stats = pool.get_stats()
        assert stats["name"] == "test"
        assert stats["running"] is True
        assert stats["workers"] == 2
        assert stats["completed_requests"] == 1
        assert stats["failed_requests"] == 0
    finally:
        pool.stop()
    assert pool.get_stats()["running"] is False


@pytest.mark.asyncio
async def test_submit_reraises_callable_exception() -> None:
    """Ensure exceptions from the callable propagate to the awaiting caller."""
    pool = WorkerPool("test")
    pool.start()

    def boom() -> None:
        raise ValueError("bad input")

    try:
        with pytest.raises(ValueError, match="bad input"):
            await pool.submit(boom)
        assert pool.get_stats()["failed_requests"] == 1
    finally:
        pool.stop()


@pytest.mark.asyncio
async def test_schedule_requires_running_pool() -> None:
    pool = WorkerPool("idle")
    with pytest.raises(RuntimeError, match="not running"):
        pool.schedule(time.time)


def test_max_workers_must_be_positive() -> None:
    with pytest.raises(ValueError):
        WorkerPool("broken", 0)


@pytest.mark.asyncio
async def test_single_worker_serializes_calls() -> None:
    """Ensure a one-thread pool never runs two calls at once."""
    pool = WorkerPool("lifecycle", 1)
    pool.start()
    lock = threading.Lock()
    active = 0
    peak = 0

    def work() -> str:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1
        return threading.current_thread().name

    try:
        names = await asyncio.gather(*(pool.submit(work) for _ in range(5)))
    finally:
        pool.stop()

    assert peak == 1
    assert set(names) == {"lifecycle-worker-0"}


@pytest.mark.asyncio
async def test_full_queue_rejects_new_work() -> None:
    """Ensure a full work queue rejects new submissions."""
    pool = WorkerPool("bounded", 1, queue_size=1)
    pool.start()
    started = threading.Event()
    release = threading.Event()

    def block() -> bool:
        started.set()
        return release.wait(5)

    try:
        running = pool.schedule(block)
        await wait_until(started.is_set)
        queued = pool.schedule(time.time)
        with pytest.raises(asyncio.QueueFull):
            pool.schedule(time.time)
        release.set()
        assert await running is True
        assert await queued > 0
    finally:
        release.set()
        pool.stop()


@pytest.mark.asyncio
async def test_submit_timeout_raises_timeout_error() -> None:
    """Ensure a submit timeout raises TimeoutError."""
    pool = WorkerPool("slow", 1, timeout=0.05)
    pool.start()
    try:
        with pytest.raises(TimeoutError):
            await pool.submit(time.sleep, 0.3)
    finally:
        pool.stop()


@pytest.mark.asyncio
async def test_stop_fails_work_that_never_started() -> None:
    """Ensure stopping the pool fails queued work that never ran."""
    pool = WorkerPool("stopping", 1)
    pool.start()
    started = threading.Event()
    release = threading.Event()

    def block() -> bool:
        started.set()
        return release.wait(5)

    running = pool.schedule(block)
    await wait_until(started.is_set)
    pending = pool.schedule(lambda: "never")

    pool.stop(join_timeout=0.1)
    release.set()

    with pytest.raises(RuntimeError, match="stopped"):
        await pending
    assert await running is True
