"""Lifecycle management of resident inference engines.

``ModelLifecycleManager`` owns the map of resident engine handles keyed by
model id. Every construction and destruction runs inside one critical
section (an ``asyncio.Lock``) and on a single-thread worker pool, so the
native layer is never entered concurrently during setup or teardown.

The resident map is authoritative. Each descriptor's ``is_loaded`` flag is
a mirror for external consumers and is flipped in the same synchronous step
that mutates the map.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
import time
from typing import Any, TypeVar

from loguru import logger

from ..schemas.model import GenerationConfig, ModelDescriptor
from .engine import EngineFactory, EngineHandle, EngineOptions
from .errors import LoadFailedError, ModelNotFoundError, ModelNotLoadedError
from .model_registry import ModelRegistry
from .worker_pool import WorkerPool

T = TypeVar("T")

FileResolver = Callable[[str, str], Awaitable[str]]


@dataclass
class _ResidentModel:
    handle: EngineHandle
    # Held for the whole duration of one native generation call. FIFO.
    gate: asyncio.Lock = field(default_factory=asyncio.Lock)
    loaded_at: float = field(default_factory=time.time)


class HandleLease:
    """Exclusive, temporary access to one resident engine handle.

    The lease must be released exactly once, from the event loop thread,
    when the native call using ``handle`` has returned. Further calls to
    ``release`` are ignored.
    """

    __slots__ = ("_release", "handle", "model_id")

    def __init__(self, model_id: str, handle: EngineHandle, release: Callable[[], None]) -> None:
        self.model_id = model_id
        self.handle = handle
        self._release: Callable[[], None] | None = release

    @property
    def released(self) -> bool:
        return self._release is None

    def release(self) -> None:
        release, self._release = self._release, None
        if release is not None:
            release()


class ModelLifecycleManager:
    """Serialize engine construction/destruction and own the resident map."""

    def __init__(
        self,
        registry: ModelRegistry,
        engine_factory: EngineFactory,
        resolver: FileResolver,
        lifecycle_pool: WorkerPool,
        *,
        max_resident_models: int = 1,
    ) -> None:
        """Initialize the lifecycle manager.

        Parameters
        ----------
        registry : ModelRegistry
            Catalogue of known descriptors.
        engine_factory : EngineFactory
            Blocking callable constructing an engine from ``EngineOptions``.
            Always executed on ``lifecycle_pool``.
        resolver : FileResolver
            Async callable mapping ``(file reference, model name)`` to a
            concrete local path.
        lifecycle_pool : WorkerPool
            Single-thread pool for construction and ``close()`` calls.
        max_resident_models : int
            When 1, every fresh load first evicts all other resident
            models.
        """
        self._registry = registry
        self._engine_factory = engine_factory
        self._resolver = resolver
        self._pool = lifecycle_pool
        self._max_resident_models = max_resident_models
        self._resident: dict[str, _ResidentModel] = {}
        self._lock = asyncio.Lock()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Lock-free reads
    # ------------------------------------------------------------------

    def is_loaded(self, model_id: str) -> bool:
        """Return True when ``model_id`` has a resident engine."""
        return model_id in self._resident

    def loaded_ids(self) -> list[str]:
        return list(self._resident)

    def loaded_since(self) -> dict[str, float]:
        """Return the epoch time at which each resident model finished loading."""
        return {model_id: resident.loaded_at for model_id, resident in self._resident.items()}

    def list_loaded(self) -> list[ModelDescriptor]:
        """Return the descriptors of all resident models."""
        return [
            self._registry.get(model_id)
            for model_id in list(self._resident)
            if self._registry.has_model(model_id)
        ]

    # ------------------------------------------------------------------
    # Load / unload
    # ------------------------------------------------------------------

    async def load(
        self,
        model_id: str,
        config: GenerationConfig | None = None,
        *,
        evict_others: bool | None = None,
    ) -> None:
        """Make ``model_id`` resident, constructing its engine if needed.

        Idempotent: an already-resident model is left untouched. Once
        started, the operation runs to completion even if the caller is
        cancelled, so the resident map always settles.

        Parameters
        ----------
        model_id : str
            Registered model identifier.
        config : GenerationConfig | None
            Supplies ``max_tokens``/``top_k`` (plus temperature and seed)
            for construction. ``None`` uses the descriptor's parameters.
        evict_others : bool | None
            Unload every other resident model before constructing.
            ``None`` applies the configured policy
            (``max_resident_models == 1``).

        Raises
        ------
        ModelNotFoundError
            If ``model_id`` is not registered.
        LoadFailedError
            If file resolution or engine construction fails. No partial
            state is left behind.
        """
        if evict_others is None:
            evict_others = self._max_resident_models == 1
        await self._run_settled(self._load(model_id, config, evict_others=evict_others))

    async def unload(self, model_id: str, *, reason: str = "manual") -> None:
        """Close and forget the resident engine for ``model_id``.

        Waits for any in-flight generation on the model to return first.

        Raises
        ------
        ModelNotFoundError
            If ``model_id`` is not resident.
        """
        await self._run_settled(self._unload(model_id, reason=reason))

    async def evict_all_except(self, model_id: str | None) -> list[str]:
        """Unload every resident model other than ``model_id``.

        Switching context frees every other slot rather than ranking by
        recency, because the target devices cannot hold two models'
        memory footprints at once.

        Returns
        -------
        list[str]
            Ids that were unloaded.
        """
        return await self._run_settled(self._evict(model_id))

    async def shutdown(self) -> None:
        """Unload every resident model."""
        await self.evict_all_except(None)

    async def _load(self, model_id: str, config: GenerationConfig | None, *, evict_others: bool) -> None:
        async with self._lock:
            descriptor = self._registry.get(model_id)
            model_logger = logger.bind(model=model_id)

            if model_id in self._resident:
                model_logger.debug(f"Model already loaded: {model_id}")
                return

            if evict_others:
                await self._evict_locked(model_id)

            options_source = config if config is not None else descriptor
            model_logger.info(f"Loading model {descriptor.display_name} from {descriptor.file_path}")
            started = time.perf_counter()
            try:
                local_path = await self._resolver(descriptor.file_path, descriptor.display_name)
                options = EngineOptions(
                    model_path=local_path,
                    max_tokens=options_source.max_tokens,
                    top_k=options_source.top_k,
                    temperature=options_source.temperature,
                    random_seed=config.random_seed if config is not None else None,
                )
                handle = await self._pool.submit(self._engine_factory, options)
            except Exception as e:
                model_logger.error(f"Failed to load model {model_id}. {type(e).__name__}: {e}")
                raise LoadFailedError(
                    f"Failed to load model '{model_id}': {type(e).__name__}: {e}", cause=e
                ) from e

            if not self._registry.has_model(model_id):
                # Removed from the catalogue while the engine was being built.
                await self._close_handle(model_id, handle)
                raise ModelNotFoundError(f"Model '{model_id}' was removed during load")

            # Publish: map entry and mirror flag change together.
            self._resident[model_id] = _ResidentModel(handle=handle)
            self._registry.set_loaded_state(model_id, True)
            model_logger.info(
                f"Successfully loaded model {descriptor.display_name} "
                f"in {time.perf_counter() - started:.2f}s"
            )

    async def _unload(self, model_id: str, *, reason: str) -> None:
        async with self._lock:
            await self._unload_locked(model_id, reason=reason)

    async def _evict(self, model_id: str | None) -> list[str]:
        async with self._lock:
            return await self._evict_locked(model_id)

    async def _evict_locked(self, keep_id: str | None) -> list[str]:
        evicted: list[str] = []
        for other_id in [mid for mid in self._resident if mid != keep_id]:
            await self._unload_locked(other_id, reason="evict")
            evicted.append(other_id)
        if evicted:
            logger.info(f"Evicted resident models: {', '.join(evicted)}")
        return evicted

    async def _unload_locked(self, model_id: str, *, reason: str) -> None:
        resident = self._resident.get(model_id)
        if resident is None:
            raise ModelNotFoundError(f"Model '{model_id}' is not loaded")

        model_logger = logger.bind(model=model_id)
        model_logger.info(f"Unloading model {model_id} ({reason})")
        async with resident.gate:
            try:
                await self._close_handle(model_id, resident.handle)
            finally:
                self._resident.pop(model_id, None)
                if self._registry.has_model(model_id):
                    self._registry.set_loaded_state(model_id, False)
        model_logger.info(f"Successfully unloaded model {model_id}")

    async def _close_handle(self, model_id: str, handle: EngineHandle) -> None:
        try:
            await self._pool.submit(handle.close)
        except Exception as e:
            logger.bind(model=model_id).error(
                f"Engine close failed for {model_id}. {type(e).__name__}: {e}"
            )
            raise

    # ------------------------------------------------------------------
    # Handle leases for the generation pipeline
    # ------------------------------------------------------------------

    async def checkout(self, model_id: str) -> HandleLease:
        """Wait (FIFO) for exclusive use of ``model_id``'s engine and return a lease.

        Raises
        ------
        ModelNotLoadedError
            If the model is not resident, or was unloaded while waiting.
        """
        resident = self._resident.get(model_id)
        if resident is None:
            raise ModelNotLoadedError(f"Model '{model_id}' is not loaded")

        await resident.gate.acquire()
        if self._resident.get(model_id) is not resident:
            resident.gate.release()
            raise ModelNotLoadedError(f"Model '{model_id}' was unloaded")
        return HandleLease(model_id, resident.handle, resident.gate.release)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_settled(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run ``coro`` as a task that survives cancellation of the caller."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)

        def _on_complete(done: asyncio.Task[Any]) -> None:
            self._background_tasks.discard(done)
            if not done.cancelled():
                # Retrieve so an abandoned failure is not reported as unhandled.
                done.exception()

        task.add_done_callback(_on_complete)
        return await asyncio.shield(task)
