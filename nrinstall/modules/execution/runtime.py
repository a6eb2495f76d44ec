"""
Container Runtime - the capability set the pool and executor depend on

ContainerRuntime is the narrow async interface (image list/pull, container
create/start/stop/remove/inspect, exec create/stream/inspect, archive put/get).
DockerRuntime implements it over the docker SDK; every SDK call is blocking,
so each one runs in the default executor.

Usage:
    from nrinstall.modules.execution.runtime import DockerRuntime
    runtime = DockerRuntime.from_settings()
"""

import asyncio
import os
from abc import ABC, abstractmethod
from functools import partial
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import docker
import docker.errors
import docker.tls

from nrinstall.core.config import settings
from nrinstall.core.exceptions import ContainerError
from nrinstall.core.logging_config import logger


class ContainerRuntime(ABC):
    """Async container runtime capability set"""

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def image_exists(self, image: str) -> bool:
        ...

    @abstractmethod
    async def pull_image(self, image: str) -> None:
        ...

    @abstractmethod
    async def create_container(self, image: str, **options: Any) -> str:
        """Create (but do not start) a container, return its id"""

    @abstractmethod
    async def start_container(self, container_id: str) -> None:
        ...

    @abstractmethod
    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        ...

    @abstractmethod
    async def remove_container(self, container_id: str, force: bool = True) -> None:
        ...

    @abstractmethod
    async def inspect_container(self, container_id: str) -> Dict[str, Any]:
        """Docker-style inspect document (``State.Running``, ``State.Health.Status``)"""

    @abstractmethod
    async def exec_create(
        self,
        container_id: str,
        cmd: List[str],
        env: Optional[Dict[str, str]] = None
    ) -> str:
        """Create an exec context, return its id"""

    @abstractmethod
    def exec_stream(self, exec_id: str) -> AsyncIterator[bytes]:
        """Start the exec and yield combined stdout/stderr chunks as they arrive"""

    @abstractmethod
    async def exec_inspect(self, exec_id: str) -> Dict[str, Any]:
        """Exec state, ``ExitCode`` is set once the command finished"""

    @abstractmethod
    async def put_archive(self, container_id: str, path: str, data: bytes) -> None:
        ...

    @abstractmethod
    async def get_archive(self, container_id: str, path: str) -> bytes:
        ...

    async def close(self) -> None:
        return None

    async def exec_run(
        self,
        container_id: str,
        cmd: List[str],
        env: Optional[Dict[str, str]] = None
    ) -> Tuple[int, bytes]:
        """Run a command to completion and return (exit_code, combined output)"""
        exec_id = await self.exec_create(container_id, cmd, env=env)
        chunks = []
        async for chunk in self.exec_stream(exec_id):
            chunks.append(chunk)
        info = await self.exec_inspect(exec_id)
        exit_code = info.get("ExitCode")
        if exit_code is None:
            exit_code = -1
        return exit_code, b"".join(chunks)


def get_docker_client(timeout: int = None) -> docker.DockerClient:
    """
    Create a docker client from settings.

    Supports:
    - Local socket (DOCKER_HOST empty) via docker.from_env()
    - Remote daemon over TCP
    - TLS when DOCKER_TLS_ENABLED and the certificates exist

    Raises:
        ContainerError: daemon unreachable
    """
    timeout = timeout or settings.DOCKER_TIMEOUT
    docker_host = settings.DOCKER_HOST

    try:
        if not docker_host:
            client = docker.from_env(timeout=timeout)
            client.ping()
            logger.info("[Runtime] Connected to local Docker")
            return client

        if settings.DOCKER_TLS_ENABLED:
            client = _try_tls_connection(docker_host, timeout)
            if client:
                return client

        client = docker.DockerClient(base_url=docker_host, timeout=timeout)
        client.ping()
        logger.info(f"[Runtime] Connected to Docker (no TLS): {docker_host}")
        return client

    except docker.errors.DockerException as e:
        logger.error(f"[Runtime] Docker connection failed: {e}")
        raise ContainerError(f"Docker not available: {e}", cause=e)


def _try_tls_connection(docker_host: str, timeout: int) -> Optional[docker.DockerClient]:
    """Connect with TLS, or None when certificates are missing or the handshake fails"""
    ca_cert = settings.DOCKER_TLS_CA_CERT
    client_cert = settings.DOCKER_TLS_CLIENT_CERT
    client_key = settings.DOCKER_TLS_CLIENT_KEY

    if not all([os.path.exists(ca_cert), os.path.exists(client_cert), os.path.exists(client_key)]):
        logger.debug(f"[Runtime] TLS certs not found at {ca_cert}, skipping TLS")
        return None

    try:
        tls_config = docker.tls.TLSConfig(
            ca_cert=ca_cert,
            client_cert=(client_cert, client_key),
            verify=settings.DOCKER_TLS_VERIFY
        )

        # tcp:// on 2375 -> https:// on the TLS port 2376
        secure_host = docker_host.replace("tcp://", "https://").replace(":2375", ":2376")

        client = docker.DockerClient(base_url=secure_host, tls=tls_config, timeout=timeout)
        client.ping()
        logger.info(f"[Runtime] Connected to Docker via TLS: {secure_host}")
        return client

    except docker.errors.DockerException as e:
        logger.warning(f"[Runtime] TLS connection failed: {e}")
        return None


_STREAM_END = object()


class DockerRuntime(ContainerRuntime):
    """ContainerRuntime over the docker SDK (low-level API for exec and archives)"""

    def __init__(self, client: docker.DockerClient):
        self.client = client

    @classmethod
    def from_settings(cls) -> "DockerRuntime":
        return cls(get_docker_client())

    async def _call(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args, **kwargs))
        except docker.errors.DockerException as e:
            name = getattr(func, "__name__", "docker call")
            raise ContainerError(f"Docker {name} failed: {e}", cause=e)

    async def ping(self) -> bool:
        try:
            return bool(await self._call(self.client.ping))
        except ContainerError:
            return False

    async def image_exists(self, image: str) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.client.images.get, image)
            return True
        except docker.errors.ImageNotFound:
            return False
        except docker.errors.DockerException as e:
            raise ContainerError(f"Docker image lookup failed for {image}: {e}", cause=e)

    async def pull_image(self, image: str) -> None:
        repository, tag = image, "latest"
        # A colon in the last path component is a tag, earlier ones are a registry port
        if ":" in image.rsplit("/", 1)[-1]:
            repository, tag = image.rsplit(":", 1)
        logger.info(f"[Runtime] Pulling image {image}")
        await self._call(self.client.images.pull, repository, tag=tag)

    async def create_container(self, image: str, **options: Any) -> str:
        container = await self._call(self.client.containers.create, image, **options)
        return container.id

    async def start_container(self, container_id: str) -> None:
        await self._call(self.client.api.start, container_id)

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        await self._call(self.client.api.stop, container_id, timeout=timeout)

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        await self._call(self.client.api.remove_container, container_id, force=force)

    async def inspect_container(self, container_id: str) -> Dict[str, Any]:
        return await self._call(self.client.api.inspect_container, container_id)

    async def exec_create(
        self,
        container_id: str,
        cmd: List[str],
        env: Optional[Dict[str, str]] = None
    ) -> str:
        exec_info = await self._call(
            self.client.api.exec_create,
            container_id,
            cmd,
            stdout=True,
            stderr=True,
            stdin=False,
            tty=False,
            environment=env or None,
        )
        return exec_info["Id"]

    async def exec_stream(self, exec_id: str) -> AsyncIterator[bytes]:
        stream = await self._call(self.client.api.exec_start, exec_id, stream=True, demux=False)
        loop = asyncio.get_running_loop()
        try:
            while True:
                chunk = await loop.run_in_executor(None, next, stream, _STREAM_END)
                if chunk is _STREAM_END:
                    break
                if chunk:
                    yield chunk
        finally:
            close = getattr(stream, "close", None)
            if close:
                close()

    async def exec_inspect(self, exec_id: str) -> Dict[str, Any]:
        return await self._call(self.client.api.exec_inspect, exec_id)

    async def put_archive(self, container_id: str, path: str, data: bytes) -> None:
        ok = await self._call(self.client.api.put_archive, container_id, path, data)
        if not ok:
            raise ContainerError(f"Archive upload to {container_id[:12]}:{path} was rejected")

    async def get_archive(self, container_id: str, path: str) -> bytes:
        def _read() -> bytes:
            stream, _stat = self.client.api.get_archive(container_id, path)
            return b"".join(stream)

        return await self._call(_read)

    async def close(self) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self.client.close)
