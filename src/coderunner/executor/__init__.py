"""
Batch execution backends.

``DockerExecutor`` runs each request in a fresh, resource-limited
container.  ``SimulatedExecutor`` stands in for it when no isolation
backend is reachable and says so in every result.  Both implement the
``CodeExecutor`` interface from ``base.py``.
"""

from .base import CodeExecutor, ExecutionRequest, ExecutionResult
from .docker_executor import DockerExecutor
from .simulated_executor import SimulatedExecutor

__all__ = [
    "CodeExecutor",
    "DockerExecutor",
    "ExecutionRequest",
    "ExecutionResult",
    "SimulatedExecutor",
]
