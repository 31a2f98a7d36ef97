"""JSON persistence of the descriptor catalogue.

The store is a best-effort side channel: a failed save is logged and never
fails the state change that triggered it.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiofiles
import aiofiles.os
from loguru import logger
from pydantic import TypeAdapter, ValidationError

from ..schemas.model import ModelDescriptor

_DESCRIPTOR_LIST = TypeAdapter(list[ModelDescriptor])


class DescriptorStore:
    """Save and reload ``ModelDescriptor`` lists as a JSON document.

    Usage
    -----
    >>> store = DescriptorStore(Path("~/.spark/models_list.json"))
    >>> registry.register_change_notifier(store.schedule_save)
    >>> await store.flush()
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self._latest: list[ModelDescriptor] | None = None
        self._writer: asyncio.Task[None] | None = None

    async def load(self) -> list[ModelDescriptor]:
        """Return the saved descriptors whose files still exist.

        Every returned descriptor has ``is_loaded`` reset to False, since no
        engine survives a restart. A missing or unreadable file yields an
        empty list.
        """
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            logger.debug(f"No saved models list at {self.path}")
            return []
        except OSError as e:
            logger.warning(f"Failed to read saved models list. {type(e).__name__}: {e}")
            return []

        try:
            saved = _DESCRIPTOR_LIST.validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid saved models list {self.path}. {type(e).__name__}: {e}")
            return []

        descriptors: list[ModelDescriptor] = []
        for descriptor in saved:
            if not descriptor.file_path or not await aiofiles.os.path.isfile(descriptor.file_path):
                logger.info(f"Dropping saved model with missing file: {descriptor.id}")
                continue
            descriptors.append(descriptor.model_copy(update={"is_loaded": False}))
        logger.info(f"Loaded {len(descriptors)} saved model(s) from {self.path}")
        return descriptors

    async def save(self, descriptors: list[ModelDescriptor]) -> None:
        """Write ``descriptors`` atomically (temporary file, then rename)."""
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        temporary = self.path.with_name(self.path.name + ".tmp")
        async with aiofiles.open(temporary, "wb") as f:
            await f.write(_DESCRIPTOR_LIST.dump_json(descriptors, indent=2))
        await aiofiles.os.replace(temporary, self.path)
        logger.debug(f"Saved {len(descriptors)} model(s) to {self.path}")

    def schedule_save(self, descriptors: list[ModelDescriptor]) -> None:
        """Save ``descriptors`` in the background; intended as a change notifier.

        Snapshots scheduled while a write is running are coalesced, and the
        newest one is always written last.
        """
        self._latest = list(descriptors)
        if self._writer is not None and not self._writer.done():
            return
        self._writer = asyncio.get_running_loop().create_task(self._drain())

        def _on_complete(done: asyncio.Task[None]) -> None:
            if done.cancelled():
                return
            e = done.exception()
            if e:
                logger.warning(f"Background model list save failed. {type(e).__name__}: {e}")

        self._writer.add_done_callback(_on_complete)

    async def flush(self) -> None:
        """Wait until every scheduled snapshot has been written (or failed)."""
        writer = self._writer
        if writer is not None and not writer.done():
            await asyncio.wait({writer})

    async def _drain(self) -> None:
        while self._latest is not None:
            snapshot, self._latest = self._latest, None
            try:
                await self.save(snapshot)
            except OSError as e:
                logger.warning(f"Failed to save models list. {type(e).__name__}: {e}")
