"""Resolution of model file references into managed local storage.

A model reference is either a plain filesystem path, used in place, or a
content reference (``file://`` URI) that is copied into the managed models
directory first. Copies are written to a temporary ``.part`` file and
renamed only once complete, so an interrupted copy never leaves a
truncated model behind.
"""

from __future__ import annotations

import os
from pathlib import Path
import shutil
from urllib.parse import unquote, urlparse

from loguru import logger

from ..const import DEFAULT_MODEL_FILE_EXTENSION
from .worker_pool import WorkerPool

CONTENT_REFERENCE_SCHEMES = frozenset({"file"})


def is_content_reference(ref: str) -> bool:
    """Return True when ``ref`` is a URI that must be copied before use."""
    return urlparse(ref).scheme in CONTENT_REFERENCE_SCHEMES


def _reference_source_path(ref: str) -> Path:
    parsed = urlparse(ref)
    return Path(unquote(parsed.path))


class ModelFileManager:
    """File operations on model artifacts, executed on the file-IO pool."""

    def __init__(self, models_dir: Path, io_pool: WorkerPool) -> None:
        self.models_dir = Path(models_dir)
        self._io_pool = io_pool

    def managed_path_for(self, ref: str, name: str) -> Path:
        """Return where a copy of ``ref`` lives inside managed storage."""
        source = _reference_source_path(ref)
        extension = source.suffix.lstrip(".") or DEFAULT_MODEL_FILE_EXTENSION
        return self.models_dir / f"{name.replace(' ', '_')}.{extension}"

    async def resolve(self, ref: str, name: str) -> str:
        """Return a concrete local path for the model reference ``ref``.

        Parameters
        ----------
        ref : str
            Plain path or ``file://`` content reference.
        name : str
            Model display name, used to name the managed copy.

        Raises
        ------
        FileNotFoundError
            If the referenced file does not exist.
        ValueError
            If ``ref`` uses an unsupported URI scheme.
        """
        scheme = urlparse(ref).scheme
        if scheme in CONTENT_REFERENCE_SCHEMES:
            logger.debug(f"Converting content reference to file path for: {name}")
            target = self.managed_path_for(ref, name)
            return await self._io_pool.submit(self._copy_into_storage, _reference_source_path(ref), target)

        # Single-letter schemes are Windows drive letters, not URIs.
        if scheme and len(scheme) > 1:
            raise ValueError(f"Unsupported model file reference: {ref}")

        path = Path(ref).expanduser()
        if not await self._io_pool.submit(path.is_file):
            raise FileNotFoundError(f"Model file does not exist: {ref}")
        logger.debug(f"Using existing file path for: {name}")
        return str(path)

    async def file_size(self, ref: str) -> int:
        """Return the size in bytes of the referenced file, or 0 if unknown."""
        path = _reference_source_path(ref) if is_content_reference(ref) else Path(ref)
        try:
            return int(await self._io_pool.submit(lambda: path.stat().st_size))
        except OSError as e:
            logger.warning(f"Could not determine file size for {ref}. {type(e).__name__}: {e}")
            return 0

    async def delete_model_file(self, file_path: str) -> bool:
        """Delete a model file; a file that is already gone counts as deleted."""
        return bool(await self._io_pool.submit(self._delete_sync, Path(file_path)))

    # ------------------------------------------------------------------
    # Blocking helpers (run on the file-IO pool)
    # ------------------------------------------------------------------

    @staticmethod
    def _copy_into_storage(source: Path, target: Path) -> str:
        if target.exists() and target.stat().st_size > 0:
            logger.debug(f"File already exists, using existing copy: {target}")
            return str(target)
        if not source.is_file():
            raise FileNotFoundError(f"Model file does not exist: {source}")

        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        try:
            with source.open("rb") as src, partial.open("wb") as dst:
                shutil.copyfileobj(src, dst)
            os.replace(partial, target)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        logger.info(f"Copied {target.stat().st_size} bytes to: {target}")
        return str(target)

    @staticmethod
    def _delete_sync(path: Path) -> bool:
        if not path.exists():
            logger.warning(f"Model file does not exist: {path}")
            return True
        try:
            path.unlink()
        except OSError as e:
            logger.error(f"Failed to delete model file {path}. {type(e).__name__}: {e}")
            return False
        logger.info(f"Deleted model file: {path}")
        return True
