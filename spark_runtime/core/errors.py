"""Error types raised by the lifecycle, generation and download components.

Every error carries a ``kind`` string and, where one exists, the underlying
``cause`` so a boundary layer can map failures to its own status codes
without the core knowing about transports.
"""

from __future__ import annotations


class ModelRuntimeError(RuntimeError):
    """Base class for all model runtime failures.

    Parameters
    ----------
    message : str
        Human-readable description of the failure.
    cause : BaseException | None, optional
        Underlying exception, when the failure wraps one.
    """

    kind = "runtime_error"

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ModelNotFoundError(ModelRuntimeError):
    """Raised for an unknown model id, or an unload of a non-resident model."""

    kind = "not_found"


class ModelNotLoadedError(ModelRuntimeError):
    """Raised when generation targets a model with no resident engine."""

    kind = "not_loaded"


class AlreadyInFlightError(ModelRuntimeError):
    """Raised when a duplicate single-flight operation is requested."""

    kind = "already_in_flight"


class LoadFailedError(ModelRuntimeError):
    """Raised when engine construction rejects the artifact or options."""

    kind = "load_failed"


class GenerationFailedError(ModelRuntimeError):
    """Raised when the native generation call fails."""

    kind = "generation_failed"


class DownloadFailedError(ModelRuntimeError):
    """Raised when a download fails with a non-2xx status or an IO error."""

    kind = "download_failed"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code


class OperationCancelledError(ModelRuntimeError):
    """Raised when an operation stopped because cancellation was requested.

    Kept apart from the failure types so callers can tell "someone asked
    for this to stop" from "this broke".
    """

    kind = "cancelled"


class DownloadCancelledError(OperationCancelledError):
    """Raised to the downloading caller after ``cancel`` was requested."""
