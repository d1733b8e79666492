"""Shared fixtures.

``FakeBackend`` stands in for :class:`coderunner.docker_backend.DockerBackend`.
It keeps the same blocking interface, reads the real workspace files the
provisioner bind-mounts, and "runs" programs with a Python callable
``program(source, stdin) -> (output, exit_code)``.  Returning a
:class:`Hang` makes the container block until it is killed.  Interactive
containers behave like a tiny shell that echoes its input.
"""

from __future__ import annotations

import asyncio
import queue
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

import pytest

from coderunner.config import Config
from coderunner.docker_backend import EnvironmentSpec
from coderunner.errors import ImageUnavailable
from coderunner.languages import STDIN_FILENAME


PROMPT = b"/code # "


class Hang:
    def __init__(self, partial: str = "") -> None:
        self.partial = partial


ProgramResult = Union[Tuple[str, int], Hang]
Program = Callable[[str, str], ProgramResult]


def echo_program(source: str, stdin: str) -> ProgramResult:
    return stdin, 0


class FakeContainer:
    def __init__(self, spec: EnvironmentSpec) -> None:
        self.spec = spec
        self.started = False
        self.stopped = False
        self.removed = False
        self.killed = threading.Event()
        self.stdin = bytearray()
        self.stdin_closed = threading.Event()
        self.output = b""
        self.exit_code: Optional[int] = None
        self.resizes: List[Tuple[int, int]] = []
        self.tty_out: "queue.Queue[bytes]" = queue.Queue()
        self.writes: List[bytes] = []

    @property
    def workspace(self) -> Path:
        return Path(self.spec.bind_mounts[0].host_path)


class FakeStream:
    def __init__(self, container: FakeContainer) -> None:
        self.container = container
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("stream closed")
        c = self.container
        c.writes.append(data)
        if c.spec.tty:
            if data.strip() == b"exit":
                c.tty_out.put(b"")
            else:
                c.tty_out.put(data)
        else:
            c.stdin.extend(data)

    def close_input(self) -> None:
        self.container.stdin_closed.set()

    def read(self, size: int = 4096) -> bytes:
        if self.closed:
            return b""
        return self.container.tty_out.get()

    def close(self) -> None:
        self.closed = True
        self.container.tty_out.put(b"")


class FakeBackend:
    def __init__(
        self,
        program: Program = echo_program,
        present: Tuple[str, ...] = (),
        pull_delay: float = 0.0,
        pull_error: bool = False,
        create_error: Optional[Exception] = None,
        create_delay: float = 0.0,
    ) -> None:
        self.program = program
        self.images = set(present)
        self.pulls: List[str] = []
        self.pull_delay = pull_delay
        self.pull_error = pull_error
        self.create_error = create_error
        self.create_delay = create_delay
        self.containers: List[FakeContainer] = []
        self.closed = False
        self._lock = threading.Lock()

    def image_present(self, image: str) -> bool:
        return image in self.images

    def pull_image(self, image: str) -> None:
        with self._lock:
            self.pulls.append(image)
        time.sleep(self.pull_delay)
        if self.pull_error:
            raise ImageUnavailable(f"Failed to pull image {image}: not found")
        self.images.add(image)

    def create(self, spec: EnvironmentSpec) -> FakeContainer:
        time.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        if spec.image not in self.images:
            raise ImageUnavailable(f"Image {spec.image} is no longer present: No such image")
        container = FakeContainer(spec)
        self.containers.append(container)
        return container

    def start(self, container: FakeContainer) -> None:
        container.started = True
        if container.spec.tty:
            container.tty_out.put(PROMPT)

    def attach(self, container: FakeContainer, output: bool = False) -> FakeStream:
        return FakeStream(container)

    def wait(self, container: FakeContainer, timeout: Optional[float] = None) -> int:
        if container.spec.stdin_open:
            container.stdin_closed.wait(5)
        source, stdin = self._read_workspace(container)
        result = self.program(source, stdin)
        if isinstance(result, Hang):
            container.output = result.partial.encode()
            container.killed.wait(30)
            container.exit_code = 137
            return 137
        output, exit_code = result
        container.output = output.encode()
        container.exit_code = exit_code
        return exit_code

    def _read_workspace(self, container: FakeContainer) -> Tuple[str, str]:
        root = container.workspace
        sources = [p for p in root.iterdir() if p.name != STDIN_FILENAME and p.is_file()]
        source = sources[0].read_text() if sources else ""
        if container.spec.stdin_open:
            stdin = container.stdin.decode()
        elif (root / STDIN_FILENAME).exists():
            stdin = (root / STDIN_FILENAME).read_text()
        else:
            stdin = ""
        return source, stdin

    def logs(self, container: FakeContainer) -> bytes:
        return container.output

    def kill(self, container: FakeContainer) -> None:
        container.killed.set()

    def stop(self, container: FakeContainer, timeout: int = 2) -> None:
        container.stopped = True
        container.killed.set()
        container.tty_out.put(b"")

    def remove(self, container: FakeContainer) -> None:
        container.removed = True
        container.killed.set()
        container.tty_out.put(b"")

    def resize(self, container: FakeContainer, rows: int, cols: int) -> None:
        container.resizes.append((rows, cols))

    def close(self) -> None:
        self.closed = True


class Recorder:
    """Collects server events emitted to a terminal client."""

    def __init__(self) -> None:
        self.events: list = []

    async def __call__(self, event) -> None:
        self.events.append(event)

    def of_type(self, kind: str) -> list:
        return [e for e in self.events if e.type == kind]

    async def wait_for(self, predicate, timeout: float = 2.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate(self.events):
            if time.monotonic() > deadline:
                raise AssertionError(f"condition not met; events: {self.events}")
            await asyncio.sleep(0.01)


ALL_IMAGES = (
    "python:3.9-alpine",
    "node:16-alpine",
    "openjdk:11-jdk-slim",
    "gcc:latest",
    "bash:5",
    "golang:alpine",
    "ruby:alpine",
    "php:cli-alpine",
    "rust:slim",
)


@pytest.fixture
def workspace_root(tmp_path) -> Path:
    return tmp_path / "workspaces"


@pytest.fixture
def config(workspace_root) -> Config:
    return Config(
        workspace_path=str(workspace_root),
        backend="docker",
        max_execution_seconds=2,
        max_output_bytes=1024,
        max_environments=4,
        admission_timeout_seconds=0,
        session_idle_seconds=60,
        closed_session_ttl_seconds=60,
        reap_interval_seconds=60,
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend(present=ALL_IMAGES)


def leftover_workspaces(root: Path) -> list:
    if not root.exists():
        return []
    return sorted(p.name for p in root.iterdir())
