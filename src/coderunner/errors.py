"""Error taxonomy for the code runner.

Every failure the platform reports is a :class:`CodeRunnerError`.  The
``error_kind`` is what callers see on the wire; ``status_code`` is the HTTP
status the API answers with.  Timeouts and non-zero exits are ordinary
results, not errors, and never appear here as raised exceptions.
"""

from __future__ import annotations

from typing import Any, Optional


class CodeRunnerError(Exception):
    """Base class for platform errors."""

    status_code: int = 500
    detail: str = "An unexpected error occurred"

    def __init__(self, detail: Optional[str] = None, **context: Any) -> None:
        self.detail = detail or self.__class__.detail
        self.context = context or None
        super().__init__(self.detail)

    @property
    def error_kind(self) -> str:
        return type(self).__name__


class UnsupportedLanguage(CodeRunnerError):
    status_code = 400
    detail = "Unsupported language"


class WorkspaceIOError(CodeRunnerError):
    status_code = 500
    detail = "Failed to prepare the workspace"


class ImageUnavailable(CodeRunnerError):
    status_code = 503
    detail = "Runtime image could not be pulled"


class EnvironmentStartError(CodeRunnerError):
    status_code = 503
    detail = "Isolated environment failed to start"


class InfrastructureError(CodeRunnerError):
    status_code = 503
    detail = "Isolation backend is unreachable"


class AdmissionRejected(CodeRunnerError):
    status_code = 503
    detail = "Too many environments running; try again later"


class SessionNotFound(CodeRunnerError):
    status_code = 404
    detail = "Session not found"


class InputAfterClose(CodeRunnerError):
    status_code = 409
    detail = "Session is closed"


EXECUTION_TIMEOUT = "ExecutionTimeout"
SIMULATED_EXECUTION = "SimulatedExecution"
