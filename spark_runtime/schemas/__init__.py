"""Data models shared by the runtime components."""

from .model import GenerationConfig, LocalArtifact, ModelDescriptor, RemoteModelSpec

__all__ = ["GenerationConfig", "LocalArtifact", "ModelDescriptor", "RemoteModelSpec"]
