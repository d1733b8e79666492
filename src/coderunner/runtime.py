"""Component wiring.

:class:`Runtime` is built once per process and owns every long-lived
component: the language registry, workspace manager, Docker backend, image
cache, admission controller, batch executor and terminal session manager.
Nothing here is a module-level singleton; the API keeps the runtime on
``app.state``.

With ``backend=auto`` and no reachable daemon, the runtime comes up in
degraded mode: batch requests are answered by the simulated executor and
terminal sessions are unavailable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .admission import AdmissionController
from .config import Config
from .docker_backend import DockerBackend
from .errors import InfrastructureError
from .executor import CodeExecutor, DockerExecutor, SimulatedExecutor
from .images import ImageCache
from .languages import LanguageRegistry
from .provisioner import EnvironmentProvisioner
from .terminal import TerminalSessionManager
from .workspace import WorkspaceManager


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: Config
    registry: LanguageRegistry
    workspaces: WorkspaceManager
    executor: CodeExecutor
    terminals: Optional[TerminalSessionManager] = None
    backend: Optional[DockerBackend] = None

    @property
    def mode(self) -> str:
        return self.executor.mode

    @classmethod
    def build(cls, config: Config, backend: Optional[DockerBackend] = None) -> "Runtime":
        registry = LanguageRegistry(allowed=config.allowed_langs)
        workspaces = WorkspaceManager(config.workspace_path, config.host_workspace_path)

        if config.backend == "simulated":
            backend = None
        elif backend is None:
            try:
                backend = DockerBackend.connect(config.docker_url)
            except InfrastructureError as exc:
                if config.backend == "docker":
                    raise
                logger.warning("[runtime] %s; falling back to simulated execution", exc.detail)

        if backend is None:
            return cls(config, registry, workspaces, SimulatedExecutor(registry))

        images = ImageCache(backend)
        provisioner = EnvironmentProvisioner(backend, config, workspaces)
        admission = AdmissionController(config.max_environments, config.admission_timeout_seconds)
        executor = DockerExecutor(config, registry, workspaces, images, provisioner, admission)
        terminals = TerminalSessionManager(config, registry, workspaces, images, provisioner, admission)
        return cls(config, registry, workspaces, executor, terminals, backend)

    def start(self) -> None:
        if self.terminals is not None:
            self.terminals.start()

    async def close(self) -> None:
        if self.terminals is not None:
            await self.terminals.shutdown()
        if self.backend is not None:
            self.backend.close()
