"""Runtime configuration dataclass and YAML loader.

``RuntimeConfig`` holds the knobs shared by the lifecycle manager, the
generation pipeline and the download manager. The dataclass performs light
normalization in ``__post_init__`` so values read from YAML or environment
variables (strings) end up with the right types.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from loguru import logger
import yaml

from .const import (
    DEFAULT_DOWNLOAD_CHUNK_SIZE,
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_FILE_IO_WORKERS,
    DEFAULT_INFERENCE_WORKERS,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_CONCURRENT_DOWNLOADS,
    DEFAULT_MAX_RESIDENT_MODELS,
    DEFAULT_MODELS_DIR,
    DEFAULT_NO_LOG_FILE,
    DEFAULT_PERSISTENCE_FILE_NAME,
    DEFAULT_STREAM_BUFFER_SIZE,
    DEFAULT_USER_AGENT,
)

_TRUE_BOOL_LITERALS = {"1", "true", "yes", "on"}
_FALSE_BOOL_LITERALS = {"0", "false", "no", "off"}


class RuntimeConfigError(RuntimeError):
    """Raised when a runtime configuration file is invalid."""


@dataclass
class RuntimeConfig:
    """Container for model runtime configuration values.

    ``max_resident_models`` of 1 enables the evict-all-others policy before
    every fresh load. Larger values keep several engines resident and skip
    eviction entirely.
    """

    models_dir: Path = DEFAULT_MODELS_DIR
    max_resident_models: int = DEFAULT_MAX_RESIDENT_MODELS
    inference_workers: int = DEFAULT_INFERENCE_WORKERS
    file_io_workers: int = DEFAULT_FILE_IO_WORKERS
    stream_buffer_size: int = DEFAULT_STREAM_BUFFER_SIZE
    download_chunk_size: int = DEFAULT_DOWNLOAD_CHUNK_SIZE
    download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT
    max_concurrent_downloads: int | None = DEFAULT_MAX_CONCURRENT_DOWNLOADS
    user_agent: str = DEFAULT_USER_AGENT
    persistence_file: Path | None = None
    persist_descriptors: bool = True
    log_file: str | None = DEFAULT_LOG_FILE
    no_log_file: bool = DEFAULT_NO_LOG_FILE
    log_level: str = DEFAULT_LOG_LEVEL

    def __post_init__(self) -> None:
        """Coerce loosely typed values and fill derived defaults.

        Raises
        ------
        ValueError
            If a numeric field is not a positive integer.
        TypeError
            If a numeric field has an unsupported type.
        """
        self.models_dir = Path(self.models_dir).expanduser()

        for name in (
            "max_resident_models",
            "inference_workers",
            "file_io_workers",
            "stream_buffer_size",
            "download_chunk_size",
        ):
            setattr(self, name, _coerce_positive_int(getattr(self, name), field_name=name))

        if self.max_concurrent_downloads is not None:
            self.max_concurrent_downloads = _coerce_positive_int(
                self.max_concurrent_downloads, field_name="max_concurrent_downloads"
            )

        self.download_timeout = float(self.download_timeout)
        if self.download_timeout <= 0:
            raise ValueError("download_timeout must be a positive number")

        self.persist_descriptors = _coerce_bool(
            self.persist_descriptors, field_name="persist_descriptors"
        )
        self.no_log_file = _coerce_bool(self.no_log_file, field_name="no_log_file")

        if self.persistence_file is None:
            self.persistence_file = self.models_dir.parent / DEFAULT_PERSISTENCE_FILE_NAME
        else:
            self.persistence_file = Path(self.persistence_file).expanduser()

        if isinstance(self.log_level, str):
            self.log_level = self.log_level.upper()


def load_runtime_config(path: Path | str) -> RuntimeConfig:
    """Build a ``RuntimeConfig`` from a YAML file.

    Parameters
    ----------
    path : Path or str
        Location of the YAML document. The root must be a mapping whose keys
        match ``RuntimeConfig`` field names.

    Returns
    -------
    RuntimeConfig
        The parsed and normalized configuration.

    Raises
    ------
    RuntimeConfigError
        If the file is missing, cannot be parsed, has a non-mapping root,
        contains unknown keys, or holds invalid values.
    """
    config_path = Path(path).expanduser()
    try:
        with config_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
    except FileNotFoundError as e:
        raise RuntimeConfigError(f"Runtime config file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise RuntimeConfigError(f"Failed to parse runtime config '{config_path}': {e}") from e

    if not isinstance(loaded, dict):
        raise RuntimeConfigError("Runtime config root must be a mapping")

    known = {f.name for f in fields(RuntimeConfig)}
    unknown = sorted(set(loaded) - known)
    if unknown:
        raise RuntimeConfigError(f"Unknown runtime config keys: {', '.join(unknown)}")

    try:
        config = RuntimeConfig(**loaded)
    except (TypeError, ValueError) as e:
        raise RuntimeConfigError(f"Invalid runtime config '{config_path}': {e}") from e

    logger.debug(f"Loaded runtime config from {config_path}")
    return config


def _coerce_bool(value: Any, *, field_name: str) -> bool:
    """Normalize a boolean-like value that may come from YAML or the environment."""

    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_BOOL_LITERALS:
            return True
        if normalized in _FALSE_BOOL_LITERALS:
            return False
        raise ValueError(f"{field_name} must be a boolean value (got '{value}')")
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValueError(f"{field_name} must be a boolean value (got {value!r})")


def _coerce_positive_int(value: Any, *, field_name: str) -> int:
    """Normalize a positive integer value, raising when invalid."""

    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be an integer value (got boolean)")
    if isinstance(value, int):
        candidate = value
    elif isinstance(value, str):
        try:
            candidate = int(value.strip())
        except ValueError as exc:
            raise ValueError(f"{field_name} must be an integer value") from exc
    else:
        raise TypeError(f"{field_name} must be an integer value (got {type(value).__name__})")

    if candidate <= 0:
        raise ValueError(f"{field_name} must be a positive integer")
    return candidate
