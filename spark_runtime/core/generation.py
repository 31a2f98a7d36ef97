"""Single-shot and streaming generation against resident engines.

The native streaming call is blocking and reports tokens through a callback
on the inference thread. ``GenerationPipeline`` bridges that callback into an
``asyncio`` async iterator with a bounded queue: when the consumer is slow,
the callback blocks until there is room, so no fragment is ever dropped.

Native calls cannot be interrupted. When a consumer abandons a stream, the
bridge stops forwarding and drains the queue, but the native call keeps
running on its worker thread. Its result is discarded and the model's
generation slot is only released once it returns.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
import concurrent.futures
import threading
import time
from typing import Any

from loguru import logger

from ..const import DEFAULT_STREAM_BUFFER_SIZE
from ..schemas.model import GenerationConfig
from .errors import GenerationFailedError
from .lifecycle import HandleLease, ModelLifecycleManager
from .worker_pool import WorkerPool

# How often a blocked producer re-checks whether the consumer went away.
_PUT_POLL_INTERVAL = 0.1

_END = object()


def _put_from_thread(
    loop: asyncio.AbstractEventLoop,
    queue: asyncio.Queue[Any],
    item: Any,
    abandoned: threading.Event,
) -> bool:
    """Put ``item`` on ``queue`` from a worker thread, waiting for room.

    Returns False without delivering when the consumer has abandoned the
    stream or the loop is gone.
    """
    if abandoned.is_set():
        return False
    try:
        pending = asyncio.run_coroutine_threadsafe(queue.put(item), loop)
    except RuntimeError:
        return False
    while True:
        try:
            pending.result(timeout=_PUT_POLL_INTERVAL)
            return True
        except concurrent.futures.TimeoutError:
            if abandoned.is_set():
                pending.cancel()
                return False
        except concurrent.futures.CancelledError:
            return False


class GenerationPipeline:
    """Run prompts against resident engines on the inference pool."""

    def __init__(
        self,
        lifecycle: ModelLifecycleManager,
        inference_pool: WorkerPool,
        *,
        stream_buffer_size: int = DEFAULT_STREAM_BUFFER_SIZE,
    ) -> None:
        if stream_buffer_size < 1:
            raise ValueError("stream_buffer_size must be at least 1")
        self._lifecycle = lifecycle
        self._pool = inference_pool
        self._stream_buffer_size = stream_buffer_size

    async def generate_once(
        self, model_id: str, prompt: str, config: GenerationConfig | None = None
    ) -> str:
        """Generate the complete response for ``prompt``.

        Requests for the same model run one at a time in arrival order.
        Sampling settings are fixed when the engine is constructed; ``config``
        only selects the request mode.

        Raises
        ------
        ModelNotLoadedError
            If ``model_id`` has no resident engine.
        GenerationFailedError
            If the engine call fails.
        """
        lease = await self._lifecycle.checkout(model_id)
        logger.debug(f"Generating response with model {model_id}")
        started = time.perf_counter()
        future = self._schedule(lease, lease.handle.generate, prompt)
        try:
            # Shielded: if the caller goes away, the native call still owns the slot.
            response = await asyncio.shield(future)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Generation failed for model {model_id}. {type(e).__name__}: {e}")
            raise GenerationFailedError(
                f"Generation failed for model '{model_id}': {type(e).__name__}: {e}", cause=e
            ) from e
        logger.debug(
            f"Generated {len(response)} characters with model {model_id} "
            f"in {time.perf_counter() - started:.2f}s"
        )
        return response

    async def generate_stream(
        self, model_id: str, prompt: str, config: GenerationConfig | None = None
    ) -> AsyncIterator[str]:
        """Yield the cumulative response text after every generated fragment.

        Each item extends the previous one. The iterator ends when the engine
        reports completion. Closing the iterator early stops delivery; the
        underlying native call finishes in the background.

        Raises
        ------
        ModelNotLoadedError
            If ``model_id`` has no resident engine (raised on first iteration).
        GenerationFailedError
            If the engine fails; items already yielded stay valid.
        """
        lease = await self._lifecycle.checkout(model_id)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self._stream_buffer_size)
        abandoned = threading.Event()
        started = threading.Event()
        handle = lease.handle

        def on_token(fragment: str, done: bool) -> None:
            _put_from_thread(loop, queue, (fragment, done), abandoned)

        def produce() -> None:
            started.set()
            try:
                handle.generate_streaming(prompt, on_token)
            except BaseException as exc:
                _put_from_thread(loop, queue, exc, abandoned)
                raise
            _put_from_thread(loop, queue, _END, abandoned)

        def on_settled(done: asyncio.Future[Any]) -> None:
            # The work item was dropped before it ran; wake the consumer.
            if not started.is_set():
                error = None if done.cancelled() else done.exception()
                queue.put_nowait(error or RuntimeError("Generation was not started"))

        logger.debug(f"Streaming response with model {model_id}")
        self._schedule(lease, produce, on_settled=on_settled)

        text = ""
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                if isinstance(item, BaseException):
                    logger.error(
                        f"Streaming generation failed for model {model_id}. "
                        f"{type(item).__name__}: {item}"
                    )
                    raise GenerationFailedError(
                        f"Generation failed for model '{model_id}': {type(item).__name__}: {item}",
                        cause=item,
                    ) from item
                fragment, done = item
                text += fragment
                yield text
                if done:
                    return
        finally:
            abandoned.set()
            while not queue.empty():
                queue.get_nowait()
            logger.debug(f"Stream for model {model_id} closed after {len(text)} characters")

    async def generate(
        self, model_id: str, prompt: str, config: GenerationConfig | None = None
    ) -> AsyncIterator[str]:
        """Dispatch on ``config.enable_streaming``.

        Streaming yields cumulative text; otherwise a single item holding the
        full response is yielded.
        """
        if config is not None and config.enable_streaming:
            stream = self.generate_stream(model_id, prompt, config)
            try:
                async for text in stream:
                    yield text
            finally:
                await stream.aclose()
        else:
            yield await self.generate_once(model_id, prompt, config)

    def get_stats(self) -> dict[str, Any]:
        return self._pool.get_stats()

    def _schedule(
        self,
        lease: HandleLease,
        func: Callable[..., Any],
        *args: Any,
        on_settled: Callable[[asyncio.Future[Any]], None] | None = None,
    ) -> asyncio.Future[Any]:
        """Queue ``func`` on the inference pool; release ``lease`` when it returns."""
        try:
            future = self._pool.schedule(func, *args)
        except BaseException:
            lease.release()
            raise

        def _release(done: asyncio.Future[Any]) -> None:
            lease.release()
            if not done.cancelled():
                # Mark retrieved; a detached failure has nobody left to report to.
                done.exception()
            if on_settled is not None:
                on_settled(done)

        future.add_done_callback(_release)
        return future
