"""Shared test fixtures and helpers for the test suite.

This module provides fake engines, pool fixtures and small factories used
by multiple test modules to avoid duplicating common setup.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from pathlib import Path
import threading
import time

import pytest

from spark_runtime.config import RuntimeConfig
from spark_runtime.core.engine import EngineOptions, TokenCallback
from spark_runtime.core.lifecycle import ModelLifecycleManager
from spark_runtime.core.model_registry import ModelRegistry
from spark_runtime.core.worker_pool import WorkerPool
from spark_runtime.schemas.model import ModelDescriptor


class FakeEngine:
    """Engine double that records calls and tracks concurrent entry."""

    def __init__(self, options: EngineOptions, factory: FakeEngineFactory) -> None:
        self.options = options
        self.factory = factory
        self.closed = False
        self.prompts: list[str] = []
        self.active = 0
        self.max_active = 0
        self.entered = threading.Event()
        self.finished = threading.Event()
        self._lock = threading.Lock()

    def _enter(self, prompt: str) -> None:
        with self._lock:
            if self.closed:
                raise RuntimeError("engine used after close")
            self.prompts.append(prompt)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.entered.set()
        hold = self.factory.hold
        if hold is not None:
            hold.wait(timeout=5)

    def _exit(self) -> None:
        with self._lock:
            self.active -= 1
        self.finished.set()

    def generate(self, prompt: str) -> str:
        self._enter(prompt)
        try:
            if self.factory.fail_at is not None:
                raise RuntimeError("engine exploded")
            return "".join(self.factory.tokens)
        finally:
            self._exit()

    def generate_streaming(self, prompt: str, on_token: TokenCallback) -> None:
        self._enter(prompt)
        try:
            tokens = self.factory.tokens
            for index, token in enumerate(tokens):
                if self.factory.fail_at == index:
                    raise RuntimeError("engine exploded")
                if self.factory.token_delay:
                    time.sleep(self.factory.token_delay)
                on_token(token, index == len(tokens) - 1)
        finally:
            self._exit()

    def close(self) -> None:
        with self._lock:
            self.closed = True


class FakeEngineFactory:
    """Callable engine factory counting constructions.

    Behaviour knobs are read at call time so tests can change them between
    steps.
    """

    def __init__(self) -> None:
        self.constructions = 0
        self.engines: list[FakeEngine] = []
        self.fail_with: BaseException | None = None
        self.construct_delay = 0.0
        self.tokens: list[str] = ["Hel", "lo", ",", " world"]
        self.fail_at: int | None = None
        self.token_delay = 0.0
        self.hold: threading.Event | None = None
        self._lock = threading.Lock()

    def __call__(self, options: EngineOptions) -> FakeEngine:
        if self.construct_delay:
            time.sleep(self.construct_delay)
        with self._lock:
            self.constructions += 1
            if self.fail_with is not None:
                raise self.fail_with
            engine = FakeEngine(options, self)
            self.engines.append(engine)
            return engine

    def engine_for(self, model_path: str) -> FakeEngine:
        return [engine for engine in self.engines if engine.options.model_path == model_path][-1]


async def passthrough_resolver(ref: str, name: str) -> str:
    return ref


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def engine_factory() -> FakeEngineFactory:
    return FakeEngineFactory()


@pytest.fixture
def make_descriptor() -> Callable[..., ModelDescriptor]:
    """Factory for descriptors whose ``file_path`` defaults to ``/models/<id>.task``."""

    def _factory(model_id: str = "gemma", **overrides: object) -> ModelDescriptor:
        values: dict[str, object] = {
            "id": model_id,
            "name": model_id.title(),
            "file_path": f"/models/{model_id}.task",
        }
        values.update(overrides)
        return ModelDescriptor(**values)

    return _factory


@pytest.fixture
def lifecycle_pool() -> Iterator[WorkerPool]:
    pool = WorkerPool("lifecycle", 1, collect_garbage=True)
    pool.start()
    yield pool
    pool.stop()


@pytest.fixture
def inference_pool() -> Iterator[WorkerPool]:
    pool = WorkerPool("inference", 4)
    pool.start()
    yield pool
    pool.stop()


@pytest.fixture
def file_io_pool() -> Iterator[WorkerPool]:
    pool = WorkerPool("file-io", 2)
    pool.start()
    yield pool
    pool.stop()


@pytest.fixture
def registry(make_descriptor: Callable[..., ModelDescriptor]) -> ModelRegistry:
    """Registry pre-populated with models ``a`` and ``b``."""
    registry = ModelRegistry()
    registry.register_model(make_descriptor("a"))
    registry.register_model(make_descriptor("b"))
    return registry


@pytest.fixture
def make_lifecycle(
    registry: ModelRegistry,
    engine_factory: FakeEngineFactory,
    lifecycle_pool: WorkerPool,
) -> Callable[..., ModelLifecycleManager]:
    def _factory(**overrides: object) -> ModelLifecycleManager:
        return ModelLifecycleManager(
            overrides.get("registry", registry),
            overrides.get("engine_factory", engine_factory),
            overrides.get("resolver", passthrough_resolver),
            lifecycle_pool,
            max_resident_models=overrides.get("max_resident_models", 1),
        )

    return _factory


@pytest.fixture
def make_runtime_config(tmp_path: Path) -> Callable[..., RuntimeConfig]:
    """Factory for configs rooted in ``tmp_path`` with small pools."""

    def _factory(**overrides: object) -> RuntimeConfig:
        values: dict[str, object] = {
            "models_dir": tmp_path / "models",
            "inference_workers": 2,
            "file_io_workers": 2,
            "download_chunk_size": 1024,
            "persistence_file": tmp_path / "models_list.json",
            "no_log_file": True,
        }
        values.update(overrides)
        return RuntimeConfig(**values)

    return _factory


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    path = tmp_path / "models"
    path.mkdir()
    return path
