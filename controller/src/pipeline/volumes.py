"""
Named volumes shared between steps.

Storage identity is the volume name: every step that declares the same name
mounts the same storage, provisioned on first use and released once no
remaining step needs it. Whatever is still provisioned when the run ends is
released by the manager's context exit, whatever the outcome.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from typing import Dict, Iterable, Optional

from controller.src.models.step import VolumeBinding, MountHandle
from controller.src.pipeline.errors import ResourceError

logger = logging.getLogger(__name__)


class VolumeBackend:
    """Creates and destroys the storage behind a volume name."""

    def create(self, name: str) -> str:
        raise NotImplementedError

    def destroy(self, name: str, location: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Called once the run is over and every volume is released."""


class LocalVolumeBackend(VolumeBackend):
    """One host directory per volume under a private temporary root.

    ``presets`` maps volume names to existing directories (e.g. a source
    checkout for the workspace); those are mounted as-is and never deleted.
    """

    def __init__(self, root: Optional[str] = None, presets: Optional[Dict[str, str]] = None):
        self._root = root
        self._owns_root = root is None
        self.presets = dict(presets or {})

    @property
    def root(self) -> str:
        if self._root is None:
            self._root = tempfile.mkdtemp(prefix="buildgraph_")
        return self._root

    def create(self, name: str) -> str:
        if name in self.presets:
            return os.path.abspath(self.presets[name])
        location = os.path.join(self.root, name)
        try:
            os.makedirs(location, exist_ok=True)
        except OSError as e:
            raise ResourceError(name, f"cannot create {location}: {e}")
        return location

    def destroy(self, name: str, location: str) -> None:
        if name in self.presets:
            return
        shutil.rmtree(location, ignore_errors=True)

    def close(self) -> None:
        if self._owns_root and self._root is not None:
            shutil.rmtree(self._root, ignore_errors=True)
            self._root = None


class VolumeManager:
    def __init__(self, backend: VolumeBackend, references: Optional[Dict[str, int]] = None):
        self.backend = backend
        self._references = dict(references or {})
        self._locations: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    @property
    def provisioned(self) -> Dict[str, str]:
        return dict(self._locations)

    async def acquire(self, name: str, mount_path: str) -> MountHandle:
        """Return a handle to the storage for ``name``, creating it once."""
        async with self._lock:
            location = self._locations.get(name)
            if location is None:
                logger.info(f"Provisioning volume '{name}'")
                location = await asyncio.to_thread(self.backend.create, name)
                self._locations[name] = location
        return MountHandle(name=name, path=mount_path, location=location)

    async def release(self, name: str) -> None:
        async with self._lock:
            location = self._locations.pop(name, None)
        if location is None:
            return
        logger.info(f"Releasing volume '{name}'")
        try:
            await asyncio.to_thread(self.backend.destroy, name, location)
        except Exception:
            logger.exception(f"Failed to release volume '{name}'")

    async def step_finished(self, mounts: Iterable[VolumeBinding]) -> None:
        """Drop a finished step's references; release volumes nobody needs."""
        for binding in mounts:
            count = self._references.get(binding.name, 0) - 1
            self._references[binding.name] = count
            if count <= 0:
                await self.release(binding.name)

    async def release_all(self) -> None:
        for name in list(self._locations):
            await self.release(name)

    async def __aenter__(self) -> "VolumeManager":
        return self

    async def close(self) -> None:
        await self.release_all()
        try:
            await asyncio.to_thread(self.backend.close)
        except Exception:
            logger.exception("Failed to clean up volume backend")

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # Shield so a cancelled run still cleans up.
        await asyncio.shield(self.close())
