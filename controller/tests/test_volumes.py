"""Tests for the volume manager and local volume storage."""

import asyncio
import os

import pytest

from conftest import RecordingBackend
from controller.src.models.step import VolumeBinding
from controller.src.pipeline.errors import ResourceError
from controller.src.pipeline.volumes import LocalVolumeBackend, VolumeManager


def test_same_name_same_storage(backend):
    async def run():
        async with VolumeManager(backend, {"cache": 2}) as volumes:
            first = await volumes.acquire("cache", "/cache")
            second = await volumes.acquire("cache", "/other")
            return first, second

    first, second = asyncio.run(run())

    assert first.location == second.location
    assert (first.path, second.path) == ("/cache", "/other")
    assert backend.created == ["cache"]


def test_concurrent_acquire_provisions_once(backend):
    async def run():
        async with VolumeManager(backend) as volumes:
            return await asyncio.gather(*(volumes.acquire("cache", "/cache") for _ in range(5)))

    handles = asyncio.run(run())

    assert len({h.location for h in handles}) == 1
    assert backend.created == ["cache"]


def test_release_after_last_reference(backend):
    binding = VolumeBinding(name="cache", path="/cache")

    async def run():
        async with VolumeManager(backend, {"cache": 2}) as volumes:
            handle = await volumes.acquire("cache", "/cache")
            await volumes.step_finished([binding])
            after_first = dict(volumes.provisioned)
            await volumes.step_finished([binding])
            return handle, after_first, dict(volumes.provisioned)

    handle, after_first, after_second = asyncio.run(run())

    assert "cache" in after_first
    assert after_second == {}
    assert backend.destroyed == ["cache"]
    assert not os.path.exists(handle.location)


def test_release_on_error(backend):
    async def run():
        async with VolumeManager(backend, {"cache": 5}) as volumes:
            await volumes.acquire("cache", "/cache")
            raise ValueError("boom")

    with pytest.raises(ValueError):
        asyncio.run(run())
    assert backend.destroyed == ["cache"]


def test_failed_destroy_is_logged_not_raised(tmp_path, caplog):
    class StickyBackend(RecordingBackend):
        def destroy(self, name, location):
            raise OSError("device busy")

    async def run():
        async with VolumeManager(StickyBackend(str(tmp_path))) as volumes:
            await volumes.acquire("cache", "/cache")

    asyncio.run(run())
    assert "Failed to release volume 'cache'" in caplog.text


def test_local_backend_presets_are_kept(tmp_path):
    source = tmp_path / "checkout"
    source.mkdir()
    backend = LocalVolumeBackend(root=str(tmp_path / "volumes"), presets={"workspace": str(source)})

    location = backend.create("workspace")
    backend.destroy("workspace", location)

    assert location == str(source)
    assert source.exists()


def test_local_backend_creates_private_root():
    backend = LocalVolumeBackend()
    location = backend.create("cache")
    try:
        assert os.path.isdir(location)
        assert os.path.basename(backend.root).startswith("buildgraph_")
    finally:
        backend.destroy("cache", location)
        os.rmdir(backend.root)


def test_local_backend_resource_error(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    backend = LocalVolumeBackend(root=str(blocker))

    with pytest.raises(ResourceError):
        backend.create("cache")


def test_private_root_removed_when_run_ends():
    backend = LocalVolumeBackend()

    async def run():
        async with VolumeManager(backend, {"cache": 1}) as volumes:
            handle = await volumes.acquire("cache", "/cache")
            with open(os.path.join(handle.location, "out.txt"), "w") as f:
                f.write("built")
            return os.path.dirname(handle.location)

    root = asyncio.run(run())

    assert not os.path.exists(root)


def test_given_root_is_left_in_place(tmp_path):
    root = tmp_path / "volumes"
    backend = LocalVolumeBackend(root=str(root))

    async def run():
        async with VolumeManager(backend) as volumes:
            await volumes.acquire("cache", "/cache")

    asyncio.run(run())

    assert root.is_dir()
    assert not (root / "cache").exists()
