"""
Sandbox Runtime - the boundary to the external container runtime.

The supervisor only needs processes whose stdout/stderr it can stream and
whose exit code it can read. DockerSandboxRuntime produces them with the
docker CLI (streamable) and uses the Docker Engine API for out-of-band
operations (stopping containers, reaping orphans, removing images).

Build:   docker run --rm -v <workspace>:/app <BUILD_IMAGE>
Service: docker build -f <BACKEND_DOCKERFILE> -t <name> <workspace>
         docker run -d --rm --name <name> -p <port>:<internal> <name>
         docker logs -f <name>                     (followed until stop)
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from sandbox_preview.core.config import settings
from sandbox_preview.core.exceptions import InfrastructureError
from sandbox_preview.core.logging_config import logger


PIPE = asyncio.subprocess.PIPE


class SandboxRuntime(ABC):
    """What the process supervisor needs from an isolated execution backend"""

    @abstractmethod
    async def start_build(self, session_id: str, workspace: Path) -> asyncio.subprocess.Process:
        """Spawn the one-shot build; output lands in <workspace>/build/web"""

    @abstractmethod
    async def prepare_service(self, session_id: str, workspace: Path) -> Optional[asyncio.subprocess.Process]:
        """Spawn the image preparation step for a service, or None if there is none"""

    @abstractmethod
    async def start_service(self, session_id: str, workspace: Path, port: int) -> asyncio.subprocess.Process:
        """Start the long-running service and return a process streaming its logs"""

    @abstractmethod
    async def stop_service(self, session_id: str) -> None:
        """Stop the service container. Must tolerate an already-stopped service."""

    async def reap_orphans(self) -> int:
        """Stop sandboxes left behind by an earlier orchestrator process"""
        return 0

    async def close(self) -> None:
        pass


def container_name(session_id: str) -> str:
    return f"backend-{session_id}".lower()


class DockerSandboxRuntime(SandboxRuntime):
    """docker CLI for streamed processes, docker SDK for control operations"""

    def __init__(
        self,
        docker_binary: str = None,
        build_image: str = None,
        backend_dockerfile: str = None,
        internal_port: int = None,
        label: str = None,
        stop_timeout: int = None,
    ):
        self.docker_binary = docker_binary or settings.DOCKER_BINARY
        self.build_image = build_image or settings.BUILD_IMAGE
        self.backend_dockerfile = backend_dockerfile or settings.BACKEND_DOCKERFILE
        self.internal_port = internal_port or settings.BACKEND_INTERNAL_PORT
        self.label = label or settings.CONTAINER_LABEL
        self.stop_timeout = stop_timeout or settings.CONTAINER_STOP_TIMEOUT
        self._client: Optional[docker.DockerClient] = None

    # ------------------------------------------------------------------ CLI

    async def _spawn(self, *args: str, cwd: Optional[Path] = None) -> asyncio.subprocess.Process:
        command = [self.docker_binary, *args]
        logger.info(f"[DockerRuntime] Executing: {' '.join(command)}")
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=PIPE,
                stderr=PIPE,
            )
        except OSError as e:
            raise InfrastructureError(f"Failed to spawn {self.docker_binary}", cause=e) from e

    def _label_args(self, session_id: str) -> List[str]:
        return ["--label", f"{self.label}={session_id}"]

    async def start_build(self, session_id: str, workspace: Path) -> asyncio.subprocess.Process:
        return await self._spawn(
            "run", "--rm",
            *self._label_args(session_id),
            "-v", f"{workspace}:/app",
            self.build_image,
        )

    async def prepare_service(self, session_id: str, workspace: Path) -> Optional[asyncio.subprocess.Process]:
        name = container_name(session_id)
        return await self._spawn(
            "build",
            "-f", self.backend_dockerfile,
            "--label", f"{self.label}={session_id}",
            "-t", name,
            str(workspace),
        )

    async def start_service(self, session_id: str, workspace: Path, port: int) -> asyncio.subprocess.Process:
        name = container_name(session_id)
        run = await self._spawn(
            "run", "-d", "--rm",
            "--name", name,
            *self._label_args(session_id),
            "-p", f"{port}:{self.internal_port}",
            name,
        )
        stdout, stderr = await run.communicate()
        if run.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or stdout.decode("utf-8", errors="replace").strip()
            raise InfrastructureError(
                f"docker run failed for {name} (exit code {run.returncode}): {message}"
            )
        logger.info(f"[DockerRuntime] Started {name} on host port {port}")
        return await self._spawn("logs", "-f", name)

    # ------------------------------------------------------------------ SDK

    def _get_client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _stop_container_sync(self, session_id: str) -> None:
        name = container_name(session_id)
        client = self._get_client()
        try:
            container = client.containers.get(name)
            container.stop(timeout=self.stop_timeout)
            logger.info(f"[DockerRuntime] Stopped container {name}")
        except NotFound:
            logger.debug(f"[DockerRuntime] Container {name} already gone")
        try:
            client.images.remove(name, force=True)
        except (ImageNotFound, NotFound):
            pass
        except APIError as e:
            logger.warning(f"[DockerRuntime] Could not remove image {name}: {e}")

    async def stop_service(self, session_id: str) -> None:
        try:
            await asyncio.to_thread(self._stop_container_sync, session_id)
        except DockerException as e:
            raise InfrastructureError(f"Failed to stop sandbox for {session_id}", cause=e) from e

    def _reap_orphans_sync(self) -> int:
        client = self._get_client()
        containers = client.containers.list(filters={"label": self.label})
        for container in containers:
            try:
                container.stop(timeout=self.stop_timeout)
                logger.info(f"[DockerRuntime] Reaped orphaned container {container.name}")
            except NotFound:
                continue
        return len(containers)

    async def reap_orphans(self) -> int:
        try:
            return await asyncio.to_thread(self._reap_orphans_sync)
        except DockerException as e:
            logger.warning(f"[DockerRuntime] Orphan sweep skipped, Docker not reachable: {e}")
            return 0

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
