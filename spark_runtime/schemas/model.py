"""Pydantic models describing models, generation settings and artifacts."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

from ..const import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL_FILE_EXTENSION,
    DEFAULT_RANDOM_SEED,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_K,
)


class RemoteModelSpec(BaseModel):
    """Where a model artifact can be fetched from.

    Only the download manager reads this; the lifecycle manager works with
    local files exclusively.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    requires_auth: bool = False
    file_name: str | None = None

    def target_file_name(self, model_id: str) -> str:
        """Return ``<model_id>.<ext>`` using the URL's extension (``task`` by default)."""
        if self.file_name:
            return self.file_name
        original = Path(urlparse(self.url).path).name
        extension = original.rsplit(".", 1)[-1] if "." in original else DEFAULT_MODEL_FILE_EXTENSION
        return f"{model_id}.{extension}"


class ModelDescriptor(BaseModel):
    """Identity, storage location and load parameters of one model.

    Instances are immutable. ``is_loaded`` is a cached mirror of the
    lifecycle manager's resident map and is only ever changed by that
    manager, which stores an updated copy in the registry.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    file_path: str = ""
    size_bytes: int = Field(default=0, ge=0)
    is_loaded: bool = False
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, gt=0)
    top_k: int = Field(default=DEFAULT_TOP_K, gt=0)
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0)
    remote: RemoteModelSpec | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class GenerationConfig(BaseModel):
    """Fully resolved per-request generation settings."""

    model_config = ConfigDict(frozen=True)

    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, gt=0)
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0)
    top_k: int = Field(default=DEFAULT_TOP_K, gt=0)
    random_seed: int = DEFAULT_RANDOM_SEED
    enable_streaming: bool = False


class LocalArtifact(BaseModel):
    """A model file materialized on local storage."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str
    path: Path
    size_bytes: int = Field(ge=0)
