"""Core components: worker pools, registry, lifecycle, generation and downloads."""

from .downloads import DownloadManager, DownloadTask
from .generation import GenerationPipeline
from .lifecycle import HandleLease, ModelLifecycleManager
from .model_registry import ModelRegistry
from .worker_pool import WorkerPool

__all__ = [
    "DownloadManager",
    "DownloadTask",
    "GenerationPipeline",
    "HandleLease",
    "ModelLifecycleManager",
    "ModelRegistry",
    "WorkerPool",
]
