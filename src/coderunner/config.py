"""Configuration loader.

The code runner reads its configuration from environment variables so the
same image can run next to a local Docker daemon or against a remote one.
Reasonable defaults are provided so that local development works out of
the box.

Environment variables:

``CODERUNNER_API_KEY``
    Shared secret expected in the ``x-api-key`` header.  Authentication is
    skipped when empty.

``CODERUNNER_WORKSPACE_PATH``
    Directory under which per-execution workspaces are created.  Defaults to
    ``/tmp/coderunner``.

``CODERUNNER_HOST_WORKSPACE_PATH``
    Path of ``CODERUNNER_WORKSPACE_PATH`` as seen by the Docker daemon.  Only
    needed when the service itself runs in a container and mounts the host
    daemon socket; bind mounts are then expressed in host paths.

``CODERUNNER_DOCKER_URL``
    Docker daemon URL, e.g. ``unix:///var/run/docker.sock``.  When unset the
    usual ``DOCKER_HOST`` environment is honoured.

``CODERUNNER_BACKEND``
    ``docker``, ``simulated`` or ``auto``.  ``auto`` falls back to simulated
    execution when the daemon is unreachable at startup.  Defaults to
    ``auto``.

``CODERUNNER_ALLOWED_LANGS``
    Comma-separated list of languages permitted for execution.  Defaults to
    every registered language.

``CODERUNNER_MAX_MEMORY_MB``
    Memory cap (in megabytes) per environment.  Swap is disabled.  Default 512.

``CODERUNNER_CPU_QUOTA``
    Fraction of one CPU granted to each environment.  Default 0.5.

``CODERUNNER_PIDS_LIMIT`` / ``CODERUNNER_TERMINAL_PIDS_LIMIT``
    Process-count caps for batch and interactive environments.  Defaults 50
    and 100.

``CODERUNNER_MAX_EXECUTION_SECONDS``
    Wall-clock timeout for a batch execution.  Requests may ask for less,
    never more.  Default 10.

``CODERUNNER_MAX_OUTPUT_BYTES``
    Captured output is truncated past this size.  Default 65536.

``CODERUNNER_MAX_ENVIRONMENTS``
    Maximum number of environments alive at once.  Default 8.

``CODERUNNER_ADMISSION_TIMEOUT_SECONDS``
    How long a request waits for a free slot before being rejected.  ``0``
    rejects immediately when the limit is reached.  Default 30.

``CODERUNNER_SESSION_IDLE_SECONDS``
    Terminal sessions without traffic for this long are closed.  Default 900.

``CODERUNNER_CLOSED_SESSION_TTL_SECONDS``
    How long a closed session is remembered before eviction.  Default 60.

``CODERUNNER_REAP_INTERVAL_SECONDS``
    Period of the idle/eviction sweep.  Default 5.

``PORT``
    The port on which the API server listens.  Defaults to 8080.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


BACKENDS = {"docker", "simulated", "auto"}


def _int_var(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {val}")


def _float_var(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Invalid number for {name}: {val}")


@dataclass
class Config:
    """Centralised configuration object."""

    api_key: str = ""
    workspace_path: str = "/tmp/coderunner"
    host_workspace_path: Optional[str] = None
    docker_url: Optional[str] = None
    backend: str = "auto"
    allowed_langs: List[str] = field(default_factory=list)
    max_memory_mb: int = 512
    cpu_quota: float = 0.5
    pids_limit: int = 50
    terminal_pids_limit: int = 100
    max_execution_seconds: int = 10
    max_output_bytes: int = 65536
    max_environments: int = 8
    admission_timeout_seconds: float = 30.0
    session_idle_seconds: float = 900.0
    closed_session_ttl_seconds: float = 60.0
    reap_interval_seconds: float = 5.0
    port: int = 8080

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(
                f"Invalid CODERUNNER_BACKEND: {self.backend}. Use one of {sorted(BACKENDS)}."
            )
        if not 0 < self.cpu_quota <= 64:
            raise ValueError(f"Invalid CODERUNNER_CPU_QUOTA: {self.cpu_quota}")
        for name in ("max_memory_mb", "pids_limit", "terminal_pids_limit",
                     "max_execution_seconds", "max_output_bytes", "max_environments"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.admission_timeout_seconds < 0:
            raise ValueError("admission_timeout_seconds must not be negative")

    @property
    def memory_bytes(self) -> int:
        return self.max_memory_mb * 1024 * 1024

    @classmethod
    def load(cls) -> "Config":
        # API key may be empty in local development but should be set in production.
        api_key = os.getenv("CODERUNNER_API_KEY", "")

        backend = os.getenv("CODERUNNER_BACKEND", "auto").lower()

        allowed_langs_env = os.getenv("CODERUNNER_ALLOWED_LANGS", "")
        allowed_langs = [lang.strip().lower() for lang in allowed_langs_env.split(",") if lang.strip()]

        return cls(
            api_key=api_key,
            workspace_path=os.getenv("CODERUNNER_WORKSPACE_PATH", "/tmp/coderunner"),
            host_workspace_path=os.getenv("CODERUNNER_HOST_WORKSPACE_PATH") or None,
            docker_url=os.getenv("CODERUNNER_DOCKER_URL") or None,
            backend=backend,
            allowed_langs=allowed_langs,
            max_memory_mb=_int_var("CODERUNNER_MAX_MEMORY_MB", 512),
            cpu_quota=_float_var("CODERUNNER_CPU_QUOTA", 0.5),
            pids_limit=_int_var("CODERUNNER_PIDS_LIMIT", 50),
            terminal_pids_limit=_int_var("CODERUNNER_TERMINAL_PIDS_LIMIT", 100),
            max_execution_seconds=_int_var("CODERUNNER_MAX_EXECUTION_SECONDS", 10),
            max_output_bytes=_int_var("CODERUNNER_MAX_OUTPUT_BYTES", 65536),
            max_environments=_int_var("CODERUNNER_MAX_ENVIRONMENTS", 8),
            admission_timeout_seconds=_float_var("CODERUNNER_ADMISSION_TIMEOUT_SECONDS", 30.0),
            session_idle_seconds=_float_var("CODERUNNER_SESSION_IDLE_SECONDS", 900.0),
            closed_session_ttl_seconds=_float_var("CODERUNNER_CLOSED_SESSION_TTL_SECONDS", 60.0),
            reap_interval_seconds=_float_var("CODERUNNER_REAP_INTERVAL_SECONDS", 5.0),
            port=_int_var("PORT", 8080),
        )

    @classmethod
    def from_env(cls) -> "Config":
        """
        Alternate constructor used by the API to load configuration.

        This wrapper calls :meth:`load` to construct the configuration.
        """
        return cls.load()
