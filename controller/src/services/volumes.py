"""
Scoped scratch volumes.

A volume is acquired for a scope: the event id for pipeline volumes, so
every pipeline of one event mounting the same name shares it, and the run
id for the run's workspace. Releasing a scope frees everything acquired
for it. Nothing here locks: pipelines that write to the same volume must be
ordered with depends_on.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from typing import Dict, List, Tuple

from controller.src.k8s.client import create_volume_claim, delete_volume_claim
from controller.src.k8s.job_builder import build_claim_name, build_volume_claim
from controller.src.models.pipeline import PipelineVolume
from controller.src.models.step import VolumeHandle

logger = logging.getLogger(__name__)

WORKSPACE = PipelineVolume(name="workspace", temp={})

class VolumeManager:
    def __init__(self):
        self._handles: Dict[Tuple[str, str], VolumeHandle] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, scope: str, volume: PipelineVolume) -> VolumeHandle:
        """Return the scope's handle for `volume`, creating it on first use."""
        key = (scope, volume.name)
        async with self._lock:
            handle = self._handles.get(key)
            if handle is None:
                handle = await self._create(scope, volume)
                self._handles[key] = handle
            return handle

    async def release(self, scope: str):
        async with self._lock:
            handles: List[VolumeHandle] = [
                h for (s, _), h in self._handles.items() if s == scope
            ]
            for handle in handles:
                del self._handles[(scope, handle.name)]

        for handle in handles:
            if handle.temporary:
                await self._destroy(handle)

    def active_scopes(self) -> List[str]:
        return sorted({scope for scope, _ in self._handles})

    async def _create(self, scope: str, volume: PipelineVolume) -> VolumeHandle:
        raise NotImplementedError

    async def _destroy(self, handle: VolumeHandle):
        raise NotImplementedError

class LocalVolumeManager(VolumeManager):
    """Temporary directories on the controller host."""

    def __init__(self, base_dir: str = None):
        super().__init__()
        self.base_dir = base_dir

    async def _create(self, scope: str, volume: PipelineVolume) -> VolumeHandle:
        if volume.is_host:
            os.makedirs(volume.host.path, exist_ok=True)
            return VolumeHandle(
                name=volume.name, scope=scope, path=volume.host.path, temporary=False
            )

        path = tempfile.mkdtemp(prefix=f"conduit_{volume.name}_", dir=self.base_dir)
        logger.debug(f"Created volume {volume.name} for {scope} at {path}")
        return VolumeHandle(name=volume.name, scope=scope, path=path)

    async def _destroy(self, handle: VolumeHandle):
        try:
            shutil.rmtree(handle.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove volume {handle.name} at {handle.path}: {e}")

class KubernetesVolumeManager(VolumeManager):
    """PersistentVolumeClaims in the conduit namespace."""

    async def _create(self, scope: str, volume: PipelineVolume) -> VolumeHandle:
        if volume.is_host:
            return VolumeHandle(
                name=volume.name, scope=scope, path=volume.host.path, temporary=False
            )

        claim_name = build_claim_name(scope, volume.name)
        await asyncio.to_thread(create_volume_claim, build_volume_claim(claim_name, scope))
        return VolumeHandle(name=volume.name, scope=scope, claim_name=claim_name)

    async def _destroy(self, handle: VolumeHandle):
        await asyncio.to_thread(delete_volume_claim, handle.claim_name)
