"""
Run steps as local Docker containers.
"""

import asyncio
import hashlib
import logging
from typing import List

from controller.src.config import get_settings
from controller.src.pipeline.errors import RuntimeUnavailableError
from controller.src.runtime.base import StepRuntime, UnitSpec, OutputCallback

logger = logging.getLogger(__name__)
settings = get_settings()

READ_CHUNK = 64 * 1024


def build_container_name(run_id: str, index: int) -> str:
    """Generate a unique container name."""
    run_hash = hashlib.md5(run_id.encode()).hexdigest()[:8]
    return f"bg-{run_hash}-{index}"


def build_docker_command(unit: UnitSpec, docker_binary: str = "docker") -> List[str]:
    """Build the ``docker run`` argv for a unit."""
    command = [
        docker_binary, "run", "--rm",
        "--name", build_container_name(unit.run_id, unit.index),
        "--workdir", unit.workdir,
    ]
    for mount in unit.mounts:
        command += ["--volume", f"{mount.location}:{mount.path}"]
    for key in sorted(unit.env):
        command += ["--env", f"{key}={unit.env[key]}"]
    if unit.machine.cpus:
        command += ["--cpus", str(unit.machine.cpus)]
    if unit.entrypoint:
        command += ["--entrypoint", unit.entrypoint]
    command.append(unit.image)
    command.extend(unit.args)
    return command


async def stream_lines(stream: asyncio.StreamReader, on_output: OutputCallback) -> None:
    """Feed decoded output lines to ``on_output``, whatever their length."""
    pending = b""
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            on_output(line.decode("utf-8", errors="replace"))
    if pending:
        on_output(pending.decode("utf-8", errors="replace"))


class DockerRuntime(StepRuntime):
    name = "docker"

    def __init__(self, docker_binary: str = None):
        self.docker_binary = docker_binary or settings.docker_binary

    async def run(self, unit: UnitSpec, on_output: OutputCallback) -> int:
        command = build_docker_command(unit, self.docker_binary)
        logger.debug(f"Starting container: {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            raise RuntimeUnavailableError(f"Docker binary '{self.docker_binary}' not found")

        try:
            await stream_lines(process.stdout, on_output)
            return await process.wait()
        except BaseException:
            if process.returncode is None:
                await asyncio.shield(self._kill(unit, process))
            raise

    async def _kill(self, unit: UnitSpec, process) -> None:
        name = build_container_name(unit.run_id, unit.index)
        logger.warning(f"Killing container {name}")
        try:
            killer = await asyncio.create_subprocess_exec(
                self.docker_binary, "kill", name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await killer.wait()
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
