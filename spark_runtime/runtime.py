"""``ModelRuntime``: the single entry point wiring registry, pools and managers.

The facade owns three worker pools (lifecycle, file-io, inference), the
descriptor registry, the lifecycle manager, the generation pipeline, the
download manager and, optionally, JSON persistence of the catalogue.

Usage
-----
>>> async with ModelRuntime(engine_factory, RuntimeConfig()) as runtime:
...     await runtime.load("gemma3_1b")
...     async for text in runtime.generate_stream("gemma3_1b", "Hello"):
...         print(text)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from .config import RuntimeConfig, load_runtime_config
from .core.downloads import (
    DownloadManager,
    ProgressCallback,
    TokenProvider,
    model_id_from_url,
    url_requires_auth,
)
from .core.engine import EngineFactory
from .core.errors import ModelRuntimeError
from .core.generation import GenerationPipeline
from .core.lifecycle import FileResolver, ModelLifecycleManager
from .core.model_files import ModelFileManager, is_content_reference
from .core.model_registry import ModelRegistry
from .core.persistence import DescriptorStore
from .core.worker_pool import WorkerPool
from .schemas.model import GenerationConfig, ModelDescriptor, RemoteModelSpec
from .utils.logging import configure_logging


class ModelRuntime:
    """Manage the lifecycle of on-device inference engines and their artifacts."""

    def __init__(
        self,
        engine_factory: EngineFactory,
        config: RuntimeConfig | None = None,
        *,
        resolver: FileResolver | None = None,
        token_provider: TokenProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Build every component. Nothing runs until ``start``.

        Parameters
        ----------
        engine_factory : EngineFactory
            Blocking callable constructing a native engine.
        config : RuntimeConfig | None
            Runtime settings; defaults are used when omitted.
        resolver : FileResolver | None
            Override for model file resolution. Defaults to
            ``ModelFileManager.resolve``.
        token_provider : TokenProvider | None
            Source of bearer tokens for downloads that require auth.
        transport : httpx.AsyncBaseTransport | None
            HTTP transport for downloads (tests pass ``httpx.MockTransport``).
        """
        self.config = config or RuntimeConfig()
        self.registry = ModelRegistry()

        self.lifecycle_pool = WorkerPool("lifecycle", 1, collect_garbage=True)
        self.file_io_pool = WorkerPool("file-io", self.config.file_io_workers)
        self.inference_pool = WorkerPool("inference", self.config.inference_workers)

        self.files = ModelFileManager(self.config.models_dir, self.file_io_pool)
        self.lifecycle = ModelLifecycleManager(
            self.registry,
            engine_factory,
            resolver or self.files.resolve,
            self.lifecycle_pool,
            max_resident_models=self.config.max_resident_models,
        )
        self.pipeline = GenerationPipeline(
            self.lifecycle,
            self.inference_pool,
            stream_buffer_size=self.config.stream_buffer_size,
        )
        self.downloads = DownloadManager(
            self.config.models_dir,
            chunk_size=self.config.download_chunk_size,
            timeout=self.config.download_timeout,
            user_agent=self.config.user_agent,
            max_concurrent_downloads=self.config.max_concurrent_downloads,
            token_provider=token_provider,
            transport=transport,
        )
        self.store = (
            DescriptorStore(self.config.persistence_file)
            if self.config.persist_descriptors and self.config.persistence_file is not None
            else None
        )
        self._started = False

    @classmethod
    def from_config_file(
        cls,
        path: Path | str,
        engine_factory: EngineFactory,
        *,
        setup_logging: bool = True,
        **kwargs: Any,
    ) -> ModelRuntime:
        """Build a runtime from a YAML config file, configuring logging from it."""
        config = load_runtime_config(path)
        if setup_logging:
            configure_logging(
                log_file=config.log_file,
                no_log_file=config.no_log_file,
                log_level=config.log_level,
            )
        return cls(engine_factory, config, **kwargs)

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the worker pools, restore saved descriptors and scan the models directory."""
        if self._started:
            return
        for pool in (self.lifecycle_pool, self.file_io_pool, self.inference_pool):
            pool.start()

        if self.store is not None:
            for descriptor in await self.store.load():
                if not self.registry.has_model(descriptor.id):
                    self.registry.register_model(descriptor)
            self.registry.register_change_notifier(self.store.schedule_save)

        self.discover_models()
        self._started = True
        logger.info(
            f"Model runtime started with {self.registry.get_model_count()} known model(s) "
            f"in {self.config.models_dir}"
        )

    async def stop(self) -> None:
        """Cancel downloads, unload every engine, flush persistence and stop the pools."""
        if not self._started:
            return
        self._started = False
        await self.downloads.cancel_all()
        try:
            await self.lifecycle.shutdown()
        finally:
            if self.store is not None:
                await self.store.flush()
                self.registry.register_change_notifier(None)
            for pool in (self.inference_pool, self.file_io_pool, self.lifecycle_pool):
                await asyncio.to_thread(pool.stop)
        logger.info("Model runtime stopped")

    async def __aenter__(self) -> ModelRuntime:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------

    def list_descriptors(self) -> list[ModelDescriptor]:
        return self.registry.list_models()

    def get_descriptor(self, model_id: str) -> ModelDescriptor:
        return self.registry.get(model_id)

    def discover_models(self) -> list[ModelDescriptor]:
        """Register every model file found in the managed models directory."""
        return self.registry.discover(self.config.models_dir)

    async def add_model(
        self, file_ref: str, name: str | None = None, description: str = ""
    ) -> ModelDescriptor:
        """Register a model from a local path or ``file://`` content reference.

        Content references are copied into managed storage first. A file that
        is already registered returns its existing descriptor.

        Raises
        ------
        FileNotFoundError
            If a plain path does not exist.
        ValueError
            If the derived id is already registered for a different file.
        """
        source_name = Path(file_ref.rsplit("/", 1)[-1]).stem
        display_name = name or source_name.replace("_", " ").replace("-", " ")
        local_path = str(Path(await self.files.resolve(file_ref, display_name)).resolve())

        existing = self.registry.find_by_path(local_path)
        if existing is not None:
            logger.info(f"Model already registered for {local_path}: {existing.id}")
            return existing

        descriptor = ModelDescriptor(
            id=Path(local_path).stem,
            name=display_name,
            description=description or ("Imported model" if is_content_reference(file_ref) else "Local model"),
            file_path=local_path,
            size_bytes=await self.files.file_size(local_path),
        )
        return self.registry.register_model(descriptor)

    async def remove_model(self, model_id: str) -> None:
        """Forget a model, unloading it first. The file stays on disk."""
        self.registry.get(model_id)
        if self.lifecycle.is_loaded(model_id):
            await self.lifecycle.unload(model_id, reason="remove")
        self.registry.unregister_model(model_id)

    async def delete_model(self, model_id: str) -> None:
        """Unload a model, delete its file and forget it.

        Raises
        ------
        ModelNotFoundError
            If ``model_id`` is not registered.
        ModelRuntimeError
            If the file could not be deleted; the descriptor is kept.
        """
        descriptor = self.registry.get(model_id)
        if self.lifecycle.is_loaded(model_id):
            await self.lifecycle.unload(model_id, reason="delete")
        if descriptor.file_path and not await self.files.delete_model_file(descriptor.file_path):
            raise ModelRuntimeError(f"Failed to delete model file for '{model_id}'")
        self.registry.unregister_model(model_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self, model_id: str, config: GenerationConfig | None = None) -> ModelDescriptor:
        """Make ``model_id`` resident and return its updated descriptor."""
        await self.lifecycle.load(model_id, config)
        return self.registry.get(model_id)

    async def unload(self, model_id: str) -> None:
        await self.lifecycle.unload(model_id)

    def is_loaded(self, model_id: str) -> bool:
        return self.lifecycle.is_loaded(model_id)

    def list_loaded(self) -> list[ModelDescriptor]:
        return self.lifecycle.list_loaded()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_once(
        self, model_id: str, prompt: str, config: GenerationConfig | None = None
    ) -> str:
        return await self.pipeline.generate_once(model_id, prompt, config)

    def generate_stream(
        self, model_id: str, prompt: str, config: GenerationConfig | None = None
    ) -> AsyncIterator[str]:
        return self.pipeline.generate_stream(model_id, prompt, config)

    def generate(
        self, model_id: str, prompt: str, config: GenerationConfig | None = None
    ) -> AsyncIterator[str]:
        return self.pipeline.generate(model_id, prompt, config)

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def download(
        self,
        descriptor: ModelDescriptor,
        auth_token: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ModelDescriptor:
        """Download ``descriptor``'s artifact and register the local model.

        Returns
        -------
        ModelDescriptor
            The registered descriptor pointing at the downloaded file.
        """
        artifact = await self.downloads.download(descriptor, auth_token, on_progress)
        local = descriptor.model_copy(
            update={
                "file_path": str(artifact.path.resolve()),
                "size_bytes": artifact.size_bytes,
                "is_loaded": False,
            }
        )

        if self.registry.has_model(local.id):
            existing = self.registry.get(local.id)
            if existing.file_path == local.file_path or self.lifecycle.is_loaded(local.id):
                return existing
            self.registry.unregister_model(local.id)
        return self.registry.register_model(local)

    async def download_from_url(
        self,
        url: str,
        name: str | None = None,
        description: str = "",
        auth_token: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ModelDescriptor:
        """Download a model from an arbitrary URL, deriving its id from the file name."""
        model_id = model_id_from_url(url)
        if self.registry.has_model(model_id):
            logger.info(f"Model already exists: {model_id}")
            return self.registry.get(model_id)

        display_name = name or model_id.replace("_", " ")
        descriptor = ModelDescriptor(
            id=model_id,
            name=display_name,
            description=description or f"Downloaded from {url}",
            remote=RemoteModelSpec(url=url, requires_auth=url_requires_auth(url, display_name)),
        )
        return await self.download(descriptor, auth_token, on_progress)

    async def cancel_download(self, model_id: str) -> None:
        await self.downloads.cancel(model_id)

    def get_download_progress(self, model_id: str) -> float | None:
        return self.downloads.get_progress(model_id)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return pool counters plus catalogue, residency and download state."""
        return {
            "models": self.registry.get_model_count(),
            "loaded": self.lifecycle.loaded_ids(),
            "loaded_at": self.lifecycle.loaded_since(),
            "downloads": {
                task.model_id: {
                    "progress": task.progress,
                    "bytes_written": task.bytes_written,
                    "started_at": task.started_at,
                }
                for task in self.downloads.list_downloads()
            },
            "pools": {
                pool.name: pool.get_stats()
                for pool in (self.lifecycle_pool, self.file_io_pool, self.inference_pool)
            },
        }
