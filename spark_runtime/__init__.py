"""Spark model runtime: on-device LLM lifecycle, generation and downloads."""

from .config import RuntimeConfig, RuntimeConfigError, load_runtime_config
from .core.errors import (
    AlreadyInFlightError,
    DownloadCancelledError,
    DownloadFailedError,
    GenerationFailedError,
    LoadFailedError,
    ModelNotFoundError,
    ModelNotLoadedError,
    ModelRuntimeError,
    OperationCancelledError,
)
from .runtime import ModelRuntime
from .schemas.model import GenerationConfig, LocalArtifact, ModelDescriptor, RemoteModelSpec
from .version import __version__

__all__ = [
    "AlreadyInFlightError",
    "DownloadCancelledError",
    "DownloadFailedError",
    "GenerationConfig",
    "GenerationFailedError",
    "LoadFailedError",
    "LocalArtifact",
    "ModelDescriptor",
    "ModelNotFoundError",
    "ModelNotLoadedError",
    "ModelRuntime",
    "ModelRuntimeError",
    "OperationCancelledError",
    "RemoteModelSpec",
    "RuntimeConfig",
    "RuntimeConfigError",
    "__version__",
    "load_runtime_config",
]
