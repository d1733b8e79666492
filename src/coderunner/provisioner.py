"""Environment provisioning.

The provisioner turns a language profile and a workspace into an
:class:`EnvironmentSpec`, creates the container and drives it through its
lifecycle.  Limits always come from :class:`~coderunner.config.Config`;
call sites only choose the mode.

Batch environments run without network, on a read-only filesystem unless
the language compiles next to its source, and are removed as soon as their
output has been collected.  Interactive environments get a bridged network,
a pseudo-terminal and a shell, and live until their session closes.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional, Set

from .config import Config
from .docker_backend import AttachedStream, BindMount, DockerBackend, EnvironmentSpec
from .errors import CodeRunnerError
from .languages import CODE_DIR, LanguageProfile
from .workspace import Workspace, WorkspaceManager


logger = logging.getLogger(__name__)

SHELL_COMMAND = ("/bin/sh",)


class Mode(str, enum.Enum):
    BATCH = "batch"
    INTERACTIVE = "interactive"


class EnvironmentState(str, enum.Enum):
    CREATED = "created"
    STARTED = "started"
    ATTACHED = "attached"
    EXITED = "exited"
    REMOVED = "removed"


@dataclass
class IsolatedEnvironment:
    spec: EnvironmentSpec
    workspace: Workspace
    handle: Any
    state: EnvironmentState = EnvironmentState.CREATED
    stream: Optional[AttachedStream] = None

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def image(self) -> str:
        return self.spec.image


class EnvironmentProvisioner:
    def __init__(self, backend: DockerBackend, config: Config, workspaces: WorkspaceManager) -> None:
        self.backend = backend
        self.config = config
        self.workspaces = workspaces
        self._orphans: Set["asyncio.Task[None]"] = set()

    def build_spec(
        self,
        profile: LanguageProfile,
        workspace: Workspace,
        mode: Mode,
        with_stdin: bool = False,
    ) -> EnvironmentSpec:
        mounts = (BindMount(self.workspaces.host_path(workspace), CODE_DIR),)
        labels = {"coderunner.mode": mode.value, "coderunner.language": profile.id}
        if mode is Mode.BATCH:
            if workspace.source_file is None:
                raise ValueError("batch workspaces must hold a source file")
            return EnvironmentSpec(
                id=workspace.id,
                image=profile.image,
                argv=tuple(profile.command(workspace.source_file.name, with_stdin)),
                working_dir=CODE_DIR,
                bind_mounts=mounts,
                memory_bytes=self.config.memory_bytes,
                cpu_quota_fraction=self.config.cpu_quota,
                pids_limit=self.config.pids_limit,
                network_policy="none",
                filesystem_policy="readwrite" if profile.compiles else "readonly",
                auto_remove=True,
                stdin_open=with_stdin and profile.streams_stdin,
                labels=labels,
            )
        return EnvironmentSpec(
            id=workspace.id,
            image=profile.image,
            argv=SHELL_COMMAND,
            working_dir=CODE_DIR,
            bind_mounts=mounts,
            memory_bytes=self.config.memory_bytes,
            cpu_quota_fraction=self.config.cpu_quota,
            pids_limit=self.config.terminal_pids_limit,
            network_policy="bridge",
            filesystem_policy="readwrite",
            auto_remove=False,
            tty=True,
            stdin_open=True,
            labels=labels,
        )

    async def provision(
        self,
        profile: LanguageProfile,
        workspace: Workspace,
        mode: Mode,
        with_stdin: bool = False,
    ) -> IsolatedEnvironment:
        """Create (but do not start) the environment for ``workspace``."""
        spec = self.build_spec(profile, workspace, mode, with_stdin)
        creation = asyncio.ensure_future(asyncio.to_thread(self.backend.create, spec))
        try:
            handle = await asyncio.shield(creation)
        except asyncio.CancelledError:
            # the daemon call cannot be interrupted; remove what it creates
            creation.add_done_callback(self._discard_orphan)
            raise
        logger.info("[provisioner] created %s environment %s (%s)", mode.value, spec.id, spec.image)
        return IsolatedEnvironment(spec=spec, workspace=workspace, handle=handle)

    def _discard_orphan(self, creation: "asyncio.Future[Any]") -> None:
        if creation.cancelled() or creation.exception() is not None:
            return
        task = asyncio.ensure_future(self._remove_quietly(creation.result()))
        self._orphans.add(task)
        task.add_done_callback(self._orphans.discard)

    async def _remove_quietly(self, handle: Any) -> None:
        try:
            await asyncio.to_thread(self.backend.remove, handle)
        except CodeRunnerError as exc:
            logger.warning("[provisioner] failed to remove abandoned environment: %s", exc)
        else:
            logger.info("[provisioner] removed environment abandoned during creation")

    async def start(self, env: IsolatedEnvironment) -> None:
        await asyncio.to_thread(self.backend.start, env.handle)
        env.state = EnvironmentState.ATTACHED if env.stream is not None else EnvironmentState.STARTED

    async def attach(self, env: IsolatedEnvironment, output: bool = False) -> AttachedStream:
        env.stream = await asyncio.to_thread(self.backend.attach, env.handle, output)
        if env.state is EnvironmentState.STARTED:
            env.state = EnvironmentState.ATTACHED
        return env.stream

    async def wait(self, env: IsolatedEnvironment, timeout: Optional[float] = None) -> int:
        exit_code = await asyncio.to_thread(self.backend.wait, env.handle, timeout)
        env.state = EnvironmentState.EXITED
        return exit_code

    async def output(self, env: IsolatedEnvironment) -> bytes:
        return await asyncio.to_thread(self.backend.logs, env.handle)

    async def kill(self, env: IsolatedEnvironment) -> None:
        await asyncio.to_thread(self.backend.kill, env.handle)
        env.state = EnvironmentState.EXITED

    async def stop(self, env: IsolatedEnvironment) -> None:
        await asyncio.to_thread(self.backend.stop, env.handle)
        env.state = EnvironmentState.EXITED

    async def resize(self, env: IsolatedEnvironment, rows: int, cols: int) -> None:
        await asyncio.to_thread(self.backend.resize, env.handle, rows, cols)

    async def teardown(self, env: IsolatedEnvironment) -> None:
        """Close the attached stream and remove the container.

        Safe to call more than once.  Failures are logged and swallowed so
        they never mask the result the caller already has.
        """
        if env.state is EnvironmentState.REMOVED:
            return
        if env.stream is not None:
            await asyncio.to_thread(env.stream.close)
        try:
            await asyncio.to_thread(self.backend.remove, env.handle)
        except CodeRunnerError as exc:
            logger.warning("[provisioner] failed to remove environment %s: %s", env.id, exc)
            return
        env.state = EnvironmentState.REMOVED
        logger.debug("[provisioner] removed environment %s", env.id)
