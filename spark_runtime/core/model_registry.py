"""Registry of known model descriptors.

The registry is the catalogue of models the runtime knows about, whether
discovered on disk, added by path, or produced by a download. It does not
hold engines: residency is owned by ``ModelLifecycleManager``, which is the
only caller allowed to flip a descriptor's ``is_loaded`` mirror.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from loguru import logger

from ..const import DEFAULT_MODEL_FILE_EXTENSION
from ..schemas.model import ModelDescriptor
from .errors import ModelNotFoundError

ChangeNotifier = Callable[[list[ModelDescriptor]], None]


class ModelRegistry:
    """Event-loop-local store of ``ModelDescriptor`` objects keyed by id.

    Descriptors are immutable; updates replace the stored instance. All
    methods are synchronous so each mutation is atomic with respect to
    other coroutines on the same loop.
    """

    def __init__(self) -> None:
        self._descriptors: dict[str, ModelDescriptor] = {}
        self._change_notifier: ChangeNotifier | None = None
        logger.info("Model registry initialized")

    def register_change_notifier(self, notifier: ChangeNotifier | None) -> None:
        """Register a synchronous callable invoked with a snapshot after every change.

        The notifier should be lightweight (for example, scheduling a
        background save). Exceptions it raises are logged and swallowed.
        """
        self._change_notifier = notifier

    def register_model(self, descriptor: ModelDescriptor) -> ModelDescriptor:
        """Add a new descriptor.

        Descriptors always enter the registry unloaded, whatever the incoming
        ``is_loaded`` value says.

        Raises
        ------
        ValueError
            If a descriptor with the same id is already registered.
        """
        if descriptor.id in self._descriptors:
            raise ValueError(f"Model '{descriptor.id}' is already registered")
        if descriptor.is_loaded:
            descriptor = descriptor.model_copy(update={"is_loaded": False})
        self._descriptors[descriptor.id] = descriptor
        logger.info(f"Registered model: {descriptor.id} ({descriptor.file_path})")
        self._notify()
        return descriptor

    def unregister_model(self, model_id: str) -> ModelDescriptor:
        """Remove and return a descriptor.

        Raises
        ------
        ModelNotFoundError
            If the id is not registered.
        """
        try:
            descriptor = self._descriptors.pop(model_id)
        except KeyError:
            raise ModelNotFoundError(f"Model '{model_id}' not found in registry") from None
        logger.info(f"Unregistered model: {model_id}")
        self._notify()
        return descriptor

    def get(self, model_id: str) -> ModelDescriptor:
        """Return the descriptor for ``model_id``.

        Raises
        ------
        ModelNotFoundError
            If the id is not registered.
        """
        try:
            return self._descriptors[model_id]
        except KeyError:
            raise ModelNotFoundError(f"Model '{model_id}' not found in registry") from None

    def has_model(self, model_id: str) -> bool:
        return model_id in self._descriptors

    def find_by_path(self, file_path: str) -> ModelDescriptor | None:
        """Return the descriptor whose ``file_path`` equals ``file_path``, if any."""
        for descriptor in self._descriptors.values():
            if descriptor.file_path == file_path:
                return descriptor
        return None

    def list_models(self) -> list[ModelDescriptor]:
        """Return a snapshot of all descriptors in registration order."""
        return list(self._descriptors.values())

    def get_model_count(self) -> int:
        return len(self._descriptors)

    def set_loaded_state(self, model_id: str, loaded: bool) -> ModelDescriptor:
        """Replace the stored descriptor with one whose ``is_loaded`` is ``loaded``.

        Only the lifecycle manager calls this, from inside its critical
        section, in the same synchronous step that mutates its resident map.
        """
        descriptor = self.get(model_id)
        if descriptor.is_loaded != loaded:
            descriptor = descriptor.model_copy(update={"is_loaded": loaded})
            self._descriptors[model_id] = descriptor
            self._notify()
        return descriptor

    def discover(
        self,
        models_dir: Path,
        *,
        extension: str = DEFAULT_MODEL_FILE_EXTENSION,
    ) -> list[ModelDescriptor]:
        """Register a descriptor for every ``*.<extension>`` file in ``models_dir``.

        Files already known (by path) or whose stem collides with a
        registered id are skipped. The id is the file stem; the display
        name replaces ``_`` and ``-`` with spaces.

        Returns
        -------
        list[ModelDescriptor]
            The newly registered descriptors.
        """
        if not models_dir.is_dir():
            logger.debug(f"Models directory does not exist yet: {models_dir}")
            return []

        found: list[ModelDescriptor] = []
        for path in sorted(models_dir.glob(f"*.{extension}")):
            if not path.is_file():
                continue
            file_path = str(path.resolve())
            if self.find_by_path(file_path) is not None or path.stem in self._descriptors:
                continue
            descriptor = ModelDescriptor(
                id=path.stem,
                name=path.stem.replace("_", " ").replace("-", " "),
                description="Local model",
                file_path=file_path,
                size_bytes=path.stat().st_size,
            )
            self._descriptors[descriptor.id] = descriptor
            found.append(descriptor)
            logger.info(f"Found model in directory: {descriptor.name}")

        if found:
            self._notify()
        return found

    def _notify(self) -> None:
        if self._change_notifier is None:
            return
        try:
            self._change_notifier(self.list_models())
        except Exception:
            # Notifier should never raise; log and continue.
            logger.exception("Model registry change notifier raised an exception")
