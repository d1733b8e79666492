"""
Batch executor running each request in a fresh Docker container.

One execution walks through: language lookup, admission, workspace,
image, container create, stdin, wait, output capture.  The workspace and
the container are released on every path out of :meth:`DockerExecutor.run`,
including timeouts, platform errors and cancellation of the calling task.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Optional

from ..admission import AdmissionController
from ..config import Config
from ..errors import EXECUTION_TIMEOUT, CodeRunnerError, ImageUnavailable
from ..images import ImageCache
from ..languages import LanguageRegistry
from ..provisioner import EnvironmentProvisioner, IsolatedEnvironment, Mode
from ..workspace import WorkspaceManager
from .base import CodeExecutor, ExecutionRequest, ExecutionResult, truncate_output


logger = logging.getLogger(__name__)

# Extra time given to the daemon's own wait call beyond our timeout.
WAIT_GRACE_SECONDS = 5.0
TIMEOUT_EXIT_CODE = -9


class DockerExecutor(CodeExecutor):
    """Execute code snippets in isolated, resource-limited containers."""

    mode = "docker"

    def __init__(
        self,
        config: Config,
        registry: LanguageRegistry,
        workspaces: WorkspaceManager,
        images: ImageCache,
        provisioner: EnvironmentProvisioner,
        admission: AdmissionController,
    ) -> None:
        self.config = config
        self.registry = registry
        self.workspaces = workspaces
        self.images = images
        self.provisioner = provisioner
        self.admission = admission

    def effective_timeout(self, timeout: Optional[float]) -> float:
        limit = float(self.config.max_execution_seconds)
        if timeout is None or timeout <= 0:
            return limit
        return min(float(timeout), limit)

    async def run(self, request: ExecutionRequest, timeout: Optional[float] = None) -> ExecutionResult:
        profile = self.registry.lookup(request.language)
        limit = self.effective_timeout(timeout)
        started = time.perf_counter()
        logger.info(
            "[batch] %s: language=%s source=%d chars stdin=%s timeout=%.1fs",
            request.id,
            profile.id,
            len(request.source_code),
            bool(request.stdin),
            limit,
        )

        async with self.admission.slot():
            with self.workspaces.scoped(request.id, profile, request.source_code, request.stdin) as workspace:
                await self.images.ensure_available(profile.image)
                try:
                    env = await self.provisioner.provision(
                        profile, workspace, Mode.BATCH, with_stdin=bool(request.stdin)
                    )
                except ImageUnavailable:
                    # pruned from the host; the next request pulls it again
                    self.images.forget(profile.image)
                    raise
                try:
                    result = await self._execute(env, request, limit)
                finally:
                    await self.provisioner.teardown(env)

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "[batch] %s finished: status=%s exit_code=%s error_kind=%s duration_ms=%d",
            request.id,
            result.status,
            result.exit_code,
            result.error_kind,
            duration_ms,
        )
        return dataclasses.replace(result, duration_ms=duration_ms)

    async def _execute(
        self, env: IsolatedEnvironment, request: ExecutionRequest, limit: float
    ) -> ExecutionResult:
        if env.spec.stdin_open:
            # Attach before starting so no input is lost.
            await self.provisioner.attach(env)
        await self.provisioner.start(env)

        try:
            exit_code = await asyncio.wait_for(self._feed_and_wait(env, request.stdin, limit), limit)
        except asyncio.TimeoutError:
            logger.info("[batch] %s exceeded %.1fs; terminating", request.id, limit)
            await self._kill_quietly(env)
            output = await self._collect_quietly(env)
            output += f"\nExecution timed out after {limit:g} seconds.\n"
            return ExecutionResult(
                id=request.id,
                status="error",
                output=output,
                exit_code=TIMEOUT_EXIT_CODE,
                error_kind=EXECUTION_TIMEOUT,
            )

        output = await self._collect(env)
        return ExecutionResult(
            id=request.id,
            status="success" if exit_code == 0 else "error",
            output=output,
            exit_code=exit_code,
        )

    async def _feed_and_wait(self, env: IsolatedEnvironment, stdin: Optional[str], limit: float) -> int:
        if env.stream is not None:
            if stdin:
                await asyncio.to_thread(env.stream.write, stdin.encode("utf-8"))
            await asyncio.to_thread(env.stream.close_input)
        return await self.provisioner.wait(env, timeout=limit + WAIT_GRACE_SECONDS)

    async def _collect(self, env: IsolatedEnvironment) -> str:
        raw = await self.provisioner.output(env)
        return truncate_output(raw.decode("utf-8", errors="replace"), self.config.max_output_bytes)

    async def _collect_quietly(self, env: IsolatedEnvironment) -> str:
        try:
            return await self._collect(env)
        except CodeRunnerError as exc:
            logger.warning("[batch] could not read partial output of %s: %s", env.id, exc)
            return ""

    async def _kill_quietly(self, env: IsolatedEnvironment) -> None:
        try:
            await self.provisioner.kill(env)
        except CodeRunnerError as exc:
            logger.warning("[batch] failed to kill %s: %s", env.id, exc)
