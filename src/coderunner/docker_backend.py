"""Thin adapter over the Docker SDK.

Everything above this module speaks in terms of :class:`EnvironmentSpec`
and opaque container handles; Docker exceptions never leak past it.
Connection failures become :class:`InfrastructureError`, refusals to
create or start a container :class:`EnvironmentStartError`, and pull
failures or an image missing at create time :class:`ImageUnavailable`.

All methods block.  Async callers run them through ``asyncio.to_thread``.
"""

from __future__ import annotations

import contextlib
import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Tuple, Type

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .errors import (
    CodeRunnerError,
    EnvironmentStartError,
    ImageUnavailable,
    InfrastructureError,
)


logger = logging.getLogger(__name__)

CPU_PERIOD_US = 100_000


@dataclass(frozen=True)
class BindMount:
    host_path: str
    container_path: str


@dataclass(frozen=True)
class EnvironmentSpec:
    """Creation parameters for one isolated environment."""

    id: str
    image: str
    argv: Tuple[str, ...]
    working_dir: str
    bind_mounts: Tuple[BindMount, ...]
    memory_bytes: int
    cpu_quota_fraction: float
    pids_limit: int
    network_policy: str = "none"
    filesystem_policy: str = "readonly"
    auto_remove: bool = True
    tty: bool = False
    stdin_open: bool = False
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def readonly(self) -> bool:
        return self.filesystem_policy == "readonly"

    def to_docker_kwargs(self) -> Dict[str, Any]:
        mode = "ro" if self.readonly else "rw"
        kwargs: Dict[str, Any] = {
            "image": self.image,
            "command": list(self.argv),
            "working_dir": self.working_dir,
            "volumes": {m.host_path: {"bind": m.container_path, "mode": mode} for m in self.bind_mounts},
            "mem_limit": self.memory_bytes,
            "memswap_limit": self.memory_bytes,
            "cpu_period": CPU_PERIOD_US,
            "cpu_quota": max(1000, int(CPU_PERIOD_US * self.cpu_quota_fraction)),
            "pids_limit": self.pids_limit,
            "network_mode": self.network_policy,
            "read_only": self.readonly,
            "security_opt": ["no-new-privileges"],
            "tty": self.tty,
            "stdin_open": self.stdin_open,
            # Batch stdin is a single stream closed by the writer.
            "stdin_once": self.stdin_open and not self.tty,
            "labels": {"coderunner.environment": self.id, **self.labels},
        }
        if self.readonly:
            kwargs["tmpfs"] = {"/tmp": "size=64m,mode=1777"}
            kwargs["cap_drop"] = ["ALL"]
        return kwargs


class AttachedStream:
    """Raw socket attached to a container's stdio."""

    def __init__(self, sock: Any) -> None:
        self._sock = sock
        # docker-py hands back a SocketIO wrapper on unix sockets
        self._raw = getattr(sock, "_sock", sock)

    def write(self, data: bytes) -> None:
        self._raw.sendall(data)

    def close_input(self) -> None:
        """Half-close the socket; the program sees EOF on stdin."""
        with contextlib.suppress(OSError):
            self._raw.shutdown(socket.SHUT_WR)

    def read(self, size: int = 4096) -> bytes:
        try:
            return self._raw.recv(size)
        except OSError:
            return b""

    def close(self) -> None:
        with contextlib.suppress(OSError):
            self._raw.shutdown(socket.SHUT_RDWR)
        with contextlib.suppress(OSError):
            self._sock.close()


@contextlib.contextmanager
def _translate(error_cls: Type[CodeRunnerError], action: str) -> Iterator[None]:
    try:
        yield
    except CodeRunnerError:
        raise
    except requests.exceptions.ConnectionError as exc:
        raise InfrastructureError(f"Docker daemon unreachable while trying to {action}: {exc}")
    except DockerException as exc:
        raise error_cls(f"Failed to {action}: {exc}")


class DockerBackend:
    """Isolation backend backed by a Docker daemon."""

    def __init__(self, client: docker.DockerClient) -> None:
        self.client = client

    @classmethod
    def connect(cls, base_url: Optional[str] = None, timeout: int = 60) -> "DockerBackend":
        try:
            if base_url:
                client = docker.DockerClient(base_url=base_url, timeout=timeout)
            else:
                client = docker.from_env(timeout=timeout)
            client.ping()
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise InfrastructureError(f"Docker daemon not available: {exc}")
        logger.info("[docker] connected to %s", client.api.base_url)
        return cls(client)

    def image_present(self, image: str) -> bool:
        with _translate(InfrastructureError, f"inspect image {image}"):
            try:
                self.client.images.get(image)
            except ImageNotFound:
                return False
        return True

    def pull_image(self, image: str) -> None:
        logger.info("[docker] pulling image %s", image)
        with _translate(ImageUnavailable, f"pull image {image}"):
            self.client.images.pull(image)

    def create(self, spec: EnvironmentSpec) -> Any:
        with _translate(EnvironmentStartError, f"create container from {spec.image}"):
            try:
                return self.client.containers.create(**spec.to_docker_kwargs())
            except ImageNotFound as exc:
                # removed from the host after it was cached
                raise ImageUnavailable(f"Image {spec.image} is no longer present: {exc}", image=spec.image)

    def start(self, container: Any) -> None:
        with _translate(EnvironmentStartError, "start container"):
            container.start()

    def attach(self, container: Any, output: bool = False) -> AttachedStream:
        params = {"stdin": 1, "stream": 1}
        if output:
            params.update(stdout=1, stderr=1)
        with _translate(EnvironmentStartError, "attach to container"):
            return AttachedStream(container.attach_socket(params=params))

    def wait(self, container: Any, timeout: Optional[float] = None) -> int:
        with _translate(InfrastructureError, "wait for container"):
            result = container.wait(timeout=timeout)
        return int(result.get("StatusCode", -1))

    def logs(self, container: Any) -> bytes:
        with _translate(InfrastructureError, "read container logs"):
            return container.logs(stdout=True, stderr=True)

    def kill(self, container: Any) -> None:
        with _translate(InfrastructureError, "kill container"):
            try:
                container.kill()
            except NotFound:
                pass
            except APIError as exc:
                # 409: container is not running any more
                if exc.status_code != 409:
                    raise

    def stop(self, container: Any, timeout: int = 2) -> None:
        with _translate(InfrastructureError, "stop container"):
            try:
                container.stop(timeout=timeout)
            except NotFound:
                pass

    def remove(self, container: Any) -> None:
        with _translate(InfrastructureError, "remove container"):
            try:
                container.remove(force=True)
            except NotFound:
                pass
            except APIError as exc:
                # 409: removal already in progress
                if exc.status_code != 409:
                    raise

    def resize(self, container: Any, rows: int, cols: int) -> None:
        with _translate(InfrastructureError, "resize terminal"):
            container.resize(height=rows, width=cols)

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self.client.close()
