from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import docker  # type: ignore
from docker.errors import APIError, DockerException, NotFound

LOGGER = logging.getLogger("testhub.runner")

STREAMS = ("stdout", "stderr")


class SpawnError(RuntimeError):
    """The test command could not be started; no process ran."""


@dataclass
class CommandSpec:
    argv: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.argv:
            raise ValueError("Command must contain at least the executable.")


class ProcessListener:
    """Receives the output and the single terminal signal of one process."""

    def on_spawned(self, pid: str) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def on_chunk(self, stream: str, data: bytes) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def on_exit(self, code: int) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def on_spawn_error(self, error: SpawnError) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError


class ProcessHandle:
    id: str

    async def read(self, stream: str, size: int) -> bytes:  # pragma: no cover - interface stub
        raise NotImplementedError

    async def wait(self) -> int:  # pragma: no cover - interface stub
        raise NotImplementedError

    def kill(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    async def close(self) -> None:
        return None


class SubprocessHandle(ProcessHandle):
    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self.id = str(process.pid)

    async def read(self, stream: str, size: int) -> bytes:
        reader = self._process.stdout if stream == "stdout" else self._process.stderr
        if reader is None:
            return b""
        return await reader.read(size)

    async def wait(self) -> int:
        return await self._process.wait()

    def kill(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            LOGGER.debug("Process %s already gone", self.id)


class ContainerHandle(ProcessHandle):
    def __init__(self, container) -> None:
        self._container = container
        self.id = str(container.id)
        self._streams: Dict[str, Iterator[bytes]] = {}

    def _log_stream(self, stream: str) -> Iterator[bytes]:
        iterator = self._streams.get(stream)
        if iterator is None:
            iterator = iter(
                self._container.logs(
                    stream=True,
                    follow=True,
                    stdout=stream == "stdout",
                    stderr=stream == "stderr",
                )
            )
            self._streams[stream] = iterator
        return iterator

    async def read(self, stream: str, size: int) -> bytes:
        iterator = await asyncio.to_thread(self._log_stream, stream)
        return await asyncio.to_thread(next, iterator, b"")

    async def wait(self) -> int:
        result = await asyncio.to_thread(self._container.wait)
        try:
            return int(result.get("StatusCode", -1))
        except (AttributeError, TypeError, ValueError):
            LOGGER.warning("Container %s returned unexpected wait result %r", self.id, result)
            return -1

    def kill(self) -> None:
        try:
            self._container.kill()
        except APIError as exc:
            LOGGER.warning("Failed to kill container %s: %s", self.id, exc)

    async def close(self) -> None:
        try:
            await asyncio.to_thread(self._container.remove, force=True)
        except NotFound:
            LOGGER.debug("Container %s already removed", self.id)
        except APIError as exc:
            LOGGER.warning("Failed to remove container %s: %s", self.id, exc)


class ProcessRunner:
    """Spawn a test command and stream its output to a listener.

    ``run`` guarantees that exactly one of ``on_exit`` or ``on_spawn_error``
    reaches the listener. Reads are capped at ``chunk_size`` bytes so the
    runner never holds more than one chunk per stream.
    """

    def __init__(self, *, chunk_size: int = 4096) -> None:
        self._chunk_size = chunk_size

    async def spawn(self, command: CommandSpec) -> ProcessHandle:  # pragma: no cover - interface stub
        raise NotImplementedError

    async def run(self, command: CommandSpec, listener: ProcessListener) -> Optional[int]:
        try:
            handle = await self.spawn(command)
        except SpawnError as exc:
            listener.on_spawn_error(exc)
            return None
        listener.on_spawned(handle.id)
        return await self.stream(handle, listener)

    async def stream(self, handle: ProcessHandle, listener: ProcessListener) -> int:
        try:
            await asyncio.gather(*(self._pump(handle, name, listener) for name in STREAMS))
            code = await handle.wait()
        except BaseException:
            LOGGER.warning("Stopping process %s before exit", handle.id)
            handle.kill()
            await self._reap(handle)
            raise
        finally:
            await handle.close()
        listener.on_exit(code)
        return code

    async def _pump(self, handle: ProcessHandle, stream: str, listener: ProcessListener) -> None:
        while True:
            try:
                data = await handle.read(stream, self._chunk_size)
            except (OSError, ValueError, DockerException) as exc:
                LOGGER.warning("Reading %s of process %s failed: %s", stream, handle.id, exc)
                return
            if not data:
                return
            listener.on_chunk(stream, data)

    @staticmethod
    async def _reap(handle: ProcessHandle) -> None:
        try:
            await asyncio.wait_for(handle.wait(), timeout=5)
        except (asyncio.TimeoutError, asyncio.CancelledError, OSError, DockerException) as exc:
            LOGGER.debug("Could not reap process %s: %r", handle.id, exc)


class SubprocessRunner(ProcessRunner):
    async def spawn(self, command: CommandSpec) -> ProcessHandle:
        try:
            process = await asyncio.create_subprocess_exec(
                *command.argv,
                cwd=command.cwd,
                env=command.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SpawnError(f"Cannot launch {command.argv[0]}: {exc}") from exc
        LOGGER.info("Spawned %s (pid=%s)", " ".join(command.argv), process.pid)
        return SubprocessHandle(process)


class DockerRunner(ProcessRunner):
    """Run the test command inside a throwaway container."""

    def __init__(
        self,
        image: str,
        *,
        client=None,
        chunk_size: int = 4096,
        workdir: str = "/workspace",
        shm_size: Optional[str] = "1g",
    ) -> None:
        super().__init__(chunk_size=chunk_size)
        self._image = image
        self._client = client
        self._workdir = workdir
        self._shm_size = shm_size

    @property
    def image(self) -> str:
        return self._image

    def _ensure_client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as exc:
                raise SpawnError(f"Docker daemon unavailable: {exc}") from exc
        return self._client

    async def spawn(self, command: CommandSpec) -> ProcessHandle:
        client = await asyncio.to_thread(self._ensure_client)
        volumes: Dict[str, Dict[str, str]] = {}
        working_dir = None
        if command.cwd:
            volumes[str(Path(command.cwd).resolve())] = {"bind": self._workdir, "mode": "rw"}
            working_dir = self._workdir
        try:
            container = await asyncio.to_thread(
                client.containers.run,
                self._image,
                command.argv,
                detach=True,
                name=f"testhub-{uuid.uuid4().hex[:12]}",
                environment=command.env,
                volumes=volumes,
                working_dir=working_dir,
                shm_size=self._shm_size,
            )
        except DockerException as exc:
            raise SpawnError(f"Container launch failed for image {self._image}: {exc}") from exc
        LOGGER.info("Started container %s from %s", container.id, self._image)
        return ContainerHandle(container)
