"""
Degraded-mode executor.

Used when no isolation backend is reachable.  It keeps the batch contract
so callers need no special casing, but it does not run anything: every
result is flagged ``simulated`` with ``error_kind="SimulatedExecution"``
and carries no exit code.  No output is guessed from the source text.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..errors import SIMULATED_EXECUTION
from ..languages import LanguageRegistry
from .base import CodeExecutor, ExecutionRequest, ExecutionResult


logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = (
    "Code execution is currently unavailable: the isolation backend could not be reached.\n"
    "Your {language} program was not run.\n"
)


class SimulatedExecutor(CodeExecutor):
    mode = "simulated"

    def __init__(self, registry: LanguageRegistry) -> None:
        self.registry = registry

    async def run(self, request: ExecutionRequest, timeout: Optional[float] = None) -> ExecutionResult:
        profile = self.registry.lookup(request.language)
        logger.warning("[simulated] %s: isolation backend unavailable; %s code not run", request.id, profile.id)
        return ExecutionResult(
            id=request.id,
            status="error",
            output=UNAVAILABLE_MESSAGE.format(language=profile.id),
            exit_code=None,
            error_kind=SIMULATED_EXECUTION,
            simulated=True,
        )
