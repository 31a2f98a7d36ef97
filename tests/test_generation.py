"""Tests for GenerationPipeline single-shot and streaming generation."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import threading

import pytest

from spark_runtime.core.errors import GenerationFailedError, ModelNotLoadedError
from spark_runtime.core.generation import GenerationPipeline
from spark_runtime.core.lifecycle import ModelLifecycleManager
from spark_runtime.core.worker_pool import WorkerPool
from spark_runtime.schemas.model import GenerationConfig
from tests.conftest import FakeEngineFactory, wait_until

MakeLifecycle = Callable[..., ModelLifecycleManager]


async def _collect(stream) -> list[str]:
    return [text async for text in stream]


@pytest.fixture
def lifecycle(make_lifecycle: MakeLifecycle) -> ModelLifecycleManager:
    return make_lifecycle(max_resident_models=2)


@pytest.fixture
def pipeline(lifecycle: ModelLifecycleManager, inference_pool: WorkerPool) -> GenerationPipeline:
    return GenerationPipeline(lifecycle, inference_pool, stream_buffer_size=2)


@pytest.mark.asyncio
async def test_generate_once_returns_full_response(
    lifecycle: ModelLifecycleManager, pipeline: GenerationPipeline
) -> None:
    """Ensure a single-shot call returns the complete response text."""
    await lifecycle.load("a")
    assert await pipeline.generate_once("a", "Say hello") == "Hello, world"


@pytest.mark.asyncio
async def test_generate_once_requires_resident_model(pipeline: GenerationPipeline) -> None:
    """Ensure generation on a model that is not loaded raises ModelNotLoadedError."""
    with pytest.raises(ModelNotLoadedError):
        await pipeline.generate_once("a", "prompt")


@pytest.mark.asyncio
async def test_generate_after_unload_fails_not_loaded(
    lifecycle: ModelLifecycleManager, pipeline: GenerationPipeline
) -> None:
    """Ensure generation fails once the model has been unloaded."""
    await lifecycle.load("a")
    assert await pipeline.generate_once("a", "first")
    await lifecycle.unload("a")

    with pytest.raises(ModelNotLoadedError):
        await pipeline.generate_once("a", "second")


@pytest.mark.asyncio
async def test_engine_failure_is_wrapped(
    lifecycle: ModelLifecycleManager, pipeline: GenerationPipeline, engine_factory: FakeEngineFactory
) -> None:
    """Ensure native engine errors surface as GenerationFailedError."""
    await lifecycle.load("a")
    engine_factory.fail_at = 0

    with pytest.raises(GenerationFailedError) as exc_info:
        await pipeline.generate_once("a", "prompt")

    assert exc_info.value.kind == "generation_failed"
    assert isinstance(exc_info.value.cause, RuntimeError)
    # The slot is free again after a failure.
    engine_factory.fail_at = None
    assert await pipeline.generate_once("a", "again") == "Hello, world"


@pytest.mark.asyncio
async def test_stream_emits_cumulative_prefix_extending_text(
    lifecycle: ModelLifecycleManager, pipeline: GenerationPipeline
) -> None:
    """Ensure each streamed item extends the previous one."""
    await lifecycle.load("a")

    items = await _collect(pipeline.generate_stream("a", "Say hello"))

    assert items == ["Hel", "Hello", "Hello,", "Hello, world"]
    for previous, current in zip(items, items[1:]):
        assert current.startswith(previous)


@pytest.mark.asyncio
async def test_stream_failure_keeps_emitted_items(
    lifecycle: ModelLifecycleManager, pipeline: GenerationPipeline, engine_factory: FakeEngineFactory
) -> None:
    """Ensure items emitted before a native failure are still delivered."""
    await lifecycle.load("a")
    engine_factory.fail_at = 2
    received: list[str] = []

    with pytest.raises(GenerationFailedError):
        async for text in pipeline.generate_stream("a", "prompt"):
            received.append(text)

    assert received == ["Hel", "Hello"]


@pytest.mark.asyncio
async def test_stream_on_unloaded_model_raises_on_iteration(pipeline: GenerationPipeline) -> None:
    """Ensure a stream over a model that is not loaded fails on first iteration."""
    stream = pipeline.generate_stream("a", "prompt")
    with pytest.raises(ModelNotLoadedError):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_slow_consumer_receives_every_fragment(
    lifecycle: ModelLifecycleManager, pipeline: GenerationPipeline, engine_factory: FakeEngineFactory
) -> None:
    """Ensure backpressure drops nothing for a slow consumer."""
    engine_factory.tokens = [f"{i} " for i in range(40)]
    await lifecycle.load("a")
    received: list[str] = []

    async for text in pipeline.generate_stream("a", "count"):
        received.append(text)
        await asyncio.sleep(0.001)

    assert len(received) == 40
    assert received[-1] == "".join(engine_factory.tokens)


@pytest.mark.asyncio
async def test_abandoned_stream_releases_slot_after_native_call(
    lifecycle: ModelLifecycleManager, pipeline: GenerationPipeline, engine_factory: FakeEngineFactory
) -> None:
    """Ensure an abandoned stream frees the model only after the native call returns."""
    engine_factory.tokens = [f"t{i}" for i in range(30)]
    engine_factory.token_delay = 0.005
    await lifecycle.load("a")
    engine = engine_factory.engines[0]

    stream = pipeline.generate_stream("a", "long")
    assert await stream.__anext__() == "t0"
    await stream.aclose()

    engine_factory.token_delay = 0.0
    result = await asyncio.wait_for(pipeline.generate_once("a", "next"), timeout=5)

    assert result == "".join(engine_factory.tokens)
    assert engine.max_active == 1
    assert engine.prompts == ["long", "next"]


@pytest.mark.asyncio
async def test_requests_for_one_model_run_fifo(
    lifecycle: ModelLifecycleManager, pipeline: GenerationPipeline, engine_factory: FakeEngineFactory
) -> None:
    """Ensure calls on one model are served one at a time in arrival order."""
    await lifecycle.load("a")
    engine = engine_factory.engines[0]
    engine_factory.hold = threading.Event()

    tasks = [asyncio.create_task(pipeline.generate_once("a", f"p{i}")) for i in range(3)]
    await wait_until(engine.entered.is_set)
    await asyncio.sleep(0.05)
    assert engine.prompts == ["p0"]

    engine_factory.hold.set()
    await asyncio.gather(*tasks)

    assert engine.prompts == ["p0", "p1", "p2"]
    assert engine.max_active == 1


@pytest.mark.asyncio
async def test_distinct_models_generate_concurrently(
    lifecycle: ModelLifecycleManager, pipeline: GenerationPipeline, engine_factory: FakeEngineFactory
) -> None:
    """Ensure different models can generate at the same time."""
    await lifecycle.load("a")
    await lifecycle.load("b")
    engine_factory.hold = threading.Event()

    tasks = [
        asyncio.create_task(pipeline.generate_once("a", "x")),
        asyncio.create_task(pipeline.generate_once("b", "y")),
    ]
    await wait_until(lambda: all(engine.entered.is_set() for engine in engine_factory.engines))

    engine_factory.hold.set()
    assert await asyncio.gather(*tasks) == ["Hello, world", "Hello, world"]


@pytest.mark.asyncio
async def test_cancelled_caller_keeps_slot_until_native_call_returns(
    lifecycle: ModelLifecycleManager, pipeline: GenerationPipeline, engine_factory: FakeEngineFactory
) -> None:
    """Ensure cancelling a caller does not free the model mid-call."""
    await lifecycle.load("a")
    engine = engine_factory.engines[0]
    engine_factory.hold = threading.Event()

    first = asyncio.create_task(pipeline.generate_once("a", "first"))
    await wait_until(engine.entered.is_set)
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    second = asyncio.create_task(pipeline.generate_once("a", "second"))
    await asyncio.sleep(0.05)
    assert engine.prompts == ["first"]

    engine_factory.hold.set()
    assert await second == "Hello, world"
    assert engine.max_active == 1


@pytest.mark.asyncio
async def test_generate_dispatches_on_streaming_flag(
    lifecycle: ModelLifecycleManager, pipeline: GenerationPipeline
) -> None:
    """Ensure generate picks streaming or single-shot from the config flag."""
    await lifecycle.load("a")

    streamed = await _collect(pipeline.generate("a", "p", GenerationConfig(enable_streaming=True)))
    single = await _collect(pipeline.generate("a", "p", GenerationConfig()))
    default = await _collect(pipeline.generate("a", "p"))

    assert streamed == ["Hel", "Hello", "Hello,", "Hello, world"]
    assert single == ["Hello, world"]
    assert default == ["Hello, world"]


def test_stream_buffer_size_must_be_positive(
    lifecycle: ModelLifecycleManager, inference_pool: WorkerPool
) -> None:
    with pytest.raises(ValueError):
        GenerationPipeline(lifecycle, inference_pool, stream_buffer_size=0)
