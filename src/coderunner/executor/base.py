"""
Base interfaces and dataclasses for batch execution backends.

Every executor implements :meth:`CodeExecutor.run`, taking an
:class:`ExecutionRequest` and a wall-clock timeout and returning an
:class:`ExecutionResult`.  Callers get the same contract whether code ran
in a real isolated environment or the isolation backend was unavailable
and a degraded executor answered instead.

Platform failures (unknown language, workspace or image problems, the
backend refusing to start an environment) are raised as
:class:`~coderunner.errors.CodeRunnerError`.  A program that fails, exits
non-zero or runs out of time is a normal result.
"""

from __future__ import annotations

import abc
import uuid
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ExecutionRequest:
    language: str
    source_code: str
    stdin: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class ExecutionResult:
    """Result of running a code snippet.

    Attributes
    ----------
    id: str
        Identifier of the execution; equal to the request id.
    status: str
        ``"success"`` when the program exited with status zero, otherwise
        ``"error"``.
    output: str
        Combined stdout and stderr, in the order the program wrote them.
    exit_code: int, optional
        Exit status of the program.  ``None`` when no program was run.
    error_kind: str, optional
        ``"ExecutionTimeout"`` when the wall-clock limit was hit,
        ``"SimulatedExecution"`` for degraded-mode answers.
    duration_ms: int
        Wall-clock time spent on the request in milliseconds.
    simulated: bool
        ``True`` when no real isolated execution took place.
    """

    id: str
    status: str
    output: str
    exit_code: Optional[int]
    error_kind: Optional[str] = None
    duration_ms: int = 0
    simulated: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "success"


class CodeExecutor(abc.ABC):
    """
    Abstract base class defining the batch execution contract.
    """

    #: Short name reported by the health endpoint.
    mode: str = "unknown"

    @abc.abstractmethod
    async def run(self, request: ExecutionRequest, timeout: Optional[float] = None) -> ExecutionResult:
        """Run ``request`` and return its result.

        Parameters
        ----------
        request: ExecutionRequest
            Language, source and optional stdin.
        timeout: float, optional
            Wall-clock limit in seconds.  Executors fall back to their
            configured maximum when omitted and never allow more than it.
        """
        raise NotImplementedError


def truncate_output(output: str, max_bytes: int) -> str:
    encoded = output.encode("utf-8")
    if len(encoded) <= max_bytes:
        return output
    kept = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return kept + f"\n... [output truncated, {len(encoded) - max_bytes} bytes omitted]\n"
