"""Default values shared by the runtime configuration and its components."""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_MODELS_DIR = Path(os.getenv("SPARK_MODELS_DIR", "~/.spark/models")).expanduser()
DEFAULT_MODEL_FILE_EXTENSION = "task"

# Reference policy: the target devices cannot hold two models in memory.
DEFAULT_MAX_RESIDENT_MODELS = 1

DEFAULT_INFERENCE_WORKERS = int(os.getenv("SPARK_INFERENCE_WORKERS", str(os.cpu_count() or 2)))
DEFAULT_FILE_IO_WORKERS = 2
DEFAULT_STREAM_BUFFER_SIZE = 16

DEFAULT_DOWNLOAD_CHUNK_SIZE = int(os.getenv("SPARK_DOWNLOAD_CHUNK_SIZE", str(8192 * 8)))
DEFAULT_DOWNLOAD_TIMEOUT = float(os.getenv("SPARK_DOWNLOAD_TIMEOUT", "60.0"))
DEFAULT_MAX_CONCURRENT_DOWNLOADS: int | None = None
DEFAULT_USER_AGENT = "spark-runtime/0.1"

DEFAULT_PERSISTENCE_FILE_NAME = "models_list.json"

DEFAULT_MAX_TOKENS = 1000
DEFAULT_TOP_K = 40
DEFAULT_TEMPERATURE = 0.8
DEFAULT_RANDOM_SEED = 0

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE: str | None = None
DEFAULT_NO_LOG_FILE = False
