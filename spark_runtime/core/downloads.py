"""Streaming model downloads with progress reporting and cooperative cancellation.

Each download streams the response body in fixed-size chunks into a
``<target>.part`` file and renames it to the final name only after the
whole body was written. Cancellation is checked at every chunk boundary;
a cancelled or failed download leaves no partial or empty file behind.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import contextlib
from dataclasses import dataclass, field
from pathlib import Path
import time
from urllib.parse import unquote, urlparse

import aiofiles
import aiofiles.os
import httpx
from loguru import logger

from ..const import (
    DEFAULT_DOWNLOAD_CHUNK_SIZE,
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_USER_AGENT,
)
from ..schemas.model import LocalArtifact, ModelDescriptor, RemoteModelSpec
from .errors import (
    AlreadyInFlightError,
    DownloadCancelledError,
    DownloadFailedError,
    ModelNotFoundError,
)

ProgressCallback = Callable[[float | None], None]
TokenProvider = Callable[[], Awaitable[str | None]]

_GATED_URL_MARKERS = ("gated", "private")
_GATED_MODEL_FAMILIES = ("gemma",)


def model_id_from_url(url: str) -> str:
    """Derive a model id from the file name at the end of ``url``.

    ``.../resolve/main/Gemma3-1B-IT_q4.task`` becomes ``gemma3_1b_it_q4``.
    """
    file_name = Path(unquote(urlparse(url).path)).name
    stem = file_name.rsplit(".", 1)[0] if "." in file_name else file_name
    model_id = stem.replace("-", "_").replace(" ", "_").lower()
    if not model_id:
        raise ValueError(f"Cannot derive a model id from URL: {url}")
    return model_id


def url_requires_auth(url: str, name: str = "") -> bool:
    """Return True for Hugging Face URLs that are likely to be gated."""
    if "huggingface.co" not in url:
        return False
    lowered = url.lower()
    if any(marker in lowered for marker in _GATED_URL_MARKERS):
        return True
    return any(family in name.lower() for family in _GATED_MODEL_FAMILIES)


@dataclass
class DownloadTask:
    """Bookkeeping for one in-flight download."""

    model_id: str
    url: str
    target: Path
    started_at: float = field(default_factory=time.time)
    bytes_written: int = 0
    total_bytes: int | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    done_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def partial_path(self) -> Path:
        return self.target.with_name(self.target.name + ".part")

    @property
    def progress(self) -> float | None:
        """Completed fraction in ``[0, 1]``, or None when the length is unknown."""
        if not self.total_bytes:
            return None
        return min(1.0, self.bytes_written / self.total_bytes)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()


class DownloadManager:
    """Fetch remote model artifacts into the managed models directory.

    Downloads of distinct model ids run concurrently, optionally bounded by
    ``max_concurrent_downloads``. A second download of an id that is still in
    flight is rejected with ``AlreadyInFlightError``.
    """

    def __init__(
        self,
        models_dir: Path,
        *,
        chunk_size: int = DEFAULT_DOWNLOAD_CHUNK_SIZE,
        timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        max_concurrent_downloads: int | None = None,
        token_provider: TokenProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the download manager.

        Parameters
        ----------
        models_dir : Path
            Directory receiving downloaded artifacts.
        chunk_size : int
            Size in bytes of each chunk read from the response body. One
            progress update and one cancellation check happen per chunk.
        timeout : float
            httpx timeout in seconds for connecting and for each read.
        user_agent : str
            ``User-Agent`` header value.
        max_concurrent_downloads : int | None
            Upper bound on simultaneous transfers; ``None`` is unbounded.
        token_provider : TokenProvider | None
            Async callable returning a bearer token, consulted when a remote
            source requires authentication and no token was passed.
        transport : httpx.AsyncBaseTransport | None
            Custom transport, for example ``httpx.MockTransport`` in tests.
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.models_dir = Path(models_dir)
        self._chunk_size = chunk_size
        self._timeout = timeout
        self._user_agent = user_agent
        self._token_provider = token_provider
        self._transport = transport
        self._semaphore = (
            asyncio.Semaphore(max_concurrent_downloads) if max_concurrent_downloads else None
        )
        self._tasks: dict[str, DownloadTask] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def target_path(self, descriptor: ModelDescriptor) -> Path:
        return self.models_dir / self._require_remote(descriptor).target_file_name(descriptor.id)

    def is_downloading(self, model_id: str) -> bool:
        return model_id in self._tasks

    def get_progress(self, model_id: str) -> float | None:
        """Return the progress of an in-flight download.

        Raises
        ------
        ModelNotFoundError
            If no download for ``model_id`` is in flight.
        """
        task = self._tasks.get(model_id)
        if task is None:
            raise ModelNotFoundError(f"No active download found for model '{model_id}'")
        return task.progress

    def list_downloads(self) -> list[DownloadTask]:
        return list(self._tasks.values())

    # ------------------------------------------------------------------
    # Download / cancel
    # ------------------------------------------------------------------

    async def download(
        self,
        descriptor: ModelDescriptor,
        auth_token: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> LocalArtifact:
        """Download the artifact described by ``descriptor.remote``.

        A non-empty file already at the target path is returned without
        touching the network.

        Parameters
        ----------
        descriptor : ModelDescriptor
            Descriptor whose ``remote`` source names the URL.
        auth_token : str | None
            Bearer token sent as ``Authorization`` header.
        on_progress : ProgressCallback | None
            Called after every chunk with the completed fraction, or with
            ``None`` when the server did not announce a length.

        Raises
        ------
        AlreadyInFlightError
            If a download for the same id is still running.
        DownloadFailedError
            On a non-2xx response (``status_code`` set) or a network or IO
            failure (``cause`` set).
        DownloadCancelledError
            If ``cancel`` was requested for this id.
        """
        remote = self._require_remote(descriptor)
        model_id = descriptor.id
        if model_id in self._tasks:
            raise AlreadyInFlightError(f"Download already in progress for model '{model_id}'")

        target = self.target_path(descriptor)
        task = DownloadTask(model_id=model_id, url=remote.url, target=target)
        self._tasks[model_id] = task
        try:
            existing = await self._existing_size(target)
            if existing:
                logger.info(f"Model already exists, skipping download: {target}")
                return LocalArtifact(model_id=model_id, path=target, size_bytes=existing)

            logger.info(f"Starting download for model {model_id} from {remote.url}")
            if self._semaphore is not None:
                async with self._semaphore:
                    size = await self._transfer(task, remote, auth_token, on_progress)
            else:
                size = await self._transfer(task, remote, auth_token, on_progress)
        except DownloadCancelledError:
            await self._cleanup(task)
            logger.info(f"Download cancelled for model {model_id}")
            raise
        except DownloadFailedError as e:
            await self._cleanup(task)
            logger.error(f"Failed to download model {model_id}. {e}")
            raise
        except asyncio.CancelledError:
            await self._cleanup(task)
            raise
        except Exception as e:
            await self._cleanup(task)
            logger.error(f"Failed to download model {model_id}. {type(e).__name__}: {e}")
            raise DownloadFailedError(
                f"Download failed for model '{model_id}': {type(e).__name__}: {e}", cause=e
            ) from e
        finally:
            self._tasks.pop(model_id, None)
            task.done_event.set()

        logger.info(f"Download completed for model {model_id}: {target} ({size} bytes)")
        return LocalArtifact(model_id=model_id, path=target, size_bytes=size)

    async def cancel(self, model_id: str) -> None:
        """Request cancellation of an in-flight download and wait for it to settle.

        Raises
        ------
        ModelNotFoundError
            If no download for ``model_id`` is in flight.
        """
        task = self._tasks.get(model_id)
        if task is None:
            logger.warning(f"No active download found for model: {model_id}")
            raise ModelNotFoundError(f"No active download found for model '{model_id}'")
        logger.info(f"Cancelling download for model: {model_id}")
        task.cancel_event.set()
        await task.done_event.wait()

    async def cancel_all(self) -> None:
        for model_id in list(self._tasks):
            with contextlib.suppress(ModelNotFoundError):
                await self.cancel(model_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _transfer(
        self,
        task: DownloadTask,
        remote: RemoteModelSpec,
        auth_token: str | None,
        on_progress: ProgressCallback | None,
    ) -> int:
        self._raise_if_cancelled(task)
        headers = {"Accept-Encoding": "identity", "User-Agent": self._user_agent}
        token = auth_token
        if token is None and remote.requires_auth and self._token_provider is not None:
            token = await self._token_provider()
        if remote.requires_auth and not token:
            raise DownloadFailedError(f"Model '{task.model_id}' requires authentication but no token is available")
        if token:
            headers["Authorization"] = f"Bearer {token}"

        await aiofiles.os.makedirs(self.models_dir, exist_ok=True)
        partial = task.partial_path

        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport, follow_redirects=True
        ) as client:
            async with client.stream("GET", remote.url, headers=headers) as response:
                if not response.is_success:
                    raise DownloadFailedError(
                        f"HTTP {response.status_code}: {response.reason_phrase}",
                        status_code=response.status_code,
                    )
                task.total_bytes = self._content_length(response)
                logger.debug(f"Download content length for {task.model_id}: {task.total_bytes} bytes")

                async with aiofiles.open(partial, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=self._chunk_size):
                        self._raise_if_cancelled(task)
                        await f.write(chunk)
                        task.bytes_written += len(chunk)
                        if on_progress is not None:
                            on_progress(task.progress)

        self._raise_if_cancelled(task)
        await aiofiles.os.replace(partial, task.target)
        return task.bytes_written

    @staticmethod
    def _raise_if_cancelled(task: DownloadTask) -> None:
        if task.cancel_requested:
            raise DownloadCancelledError(f"Download cancelled for model '{task.model_id}'")

    @staticmethod
    def _content_length(response: httpx.Response) -> int | None:
        value = response.headers.get("Content-Length")
        if value is None:
            return None
        try:
            length = int(value)
        except ValueError:
            return None
        return length if length > 0 else None

    @staticmethod
    def _require_remote(descriptor: ModelDescriptor) -> RemoteModelSpec:
        if descriptor.remote is None:
            raise ValueError(f"Model '{descriptor.id}' has no remote source")
        return descriptor.remote

    @staticmethod
    async def _existing_size(path: Path) -> int:
        try:
            stat = await aiofiles.os.stat(path)
        except FileNotFoundError:
            return 0
        return stat.st_size

    async def _cleanup(self, task: DownloadTask) -> None:
        """Delete the partial file and any empty files left for the task's id."""
        candidates = [task.partial_path]
        try:
            names = await aiofiles.os.listdir(self.models_dir)
        except FileNotFoundError:
            names = []
        prefix = f"{task.model_id}."
        candidates.extend(self.models_dir / name for name in sorted(names) if name.startswith(prefix))
        for path in candidates:
            try:
                if path == task.partial_path or (await aiofiles.os.stat(path)).st_size == 0:
                    await aiofiles.os.remove(path)
                    logger.debug(f"Cleaned up partial file after download: {path}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to clean up {path}. {type(e).__name__}: {e}")
