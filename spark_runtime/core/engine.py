"""Typing contract for the native inference engine.

The inference algorithm itself is opaque: the runtime only needs a way to
construct an engine from a model file and three blocking calls on the
resulting instance.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

TokenCallback = Callable[[str, bool], None]


@dataclass(frozen=True, slots=True)
class EngineOptions:
    """Options passed to the engine factory when a model is loaded."""

    model_path: str
    max_tokens: int
    top_k: int
    temperature: float | None = None
    random_seed: int | None = None


class EngineHandle(Protocol):
    """One constructed native inference instance bound to a model file.

    Implementations are not assumed to be safe for concurrent use; the
    runtime never enters a handle from two threads at once.
    """

    def generate(self, prompt: str) -> str:  # pragma: no cover - typing stub
        """Run a blocking single-shot generation and return the full text."""

    def generate_streaming(
        self, prompt: str, on_token: TokenCallback
    ) -> None:  # pragma: no cover - typing stub
        """Run a blocking generation, calling ``on_token(fragment, done)`` per token.

        Fragments are incremental, not cumulative. Errors are raised from
        this call rather than delivered through the callback.
        """

    def close(self) -> None:  # pragma: no cover - typing stub
        """Release native resources. The handle is unusable afterwards."""


EngineFactory = Callable[[EngineOptions], EngineHandle]
