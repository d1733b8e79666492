"""Isolated code execution service.

This package runs untrusted source code submitted by end users, either once
(batch execution: code and stdin in, combined output and exit code out) or
as a long-lived interactive terminal.  Every execution or session gets its
own ephemeral workspace and its own resource-limited container, both of
which are removed on every exit path.

The top-level modules include:

* ``config`` – configuration handling for environment variables.
* ``errors`` – the platform error taxonomy.
* ``languages`` – per-language images, file names and run commands.
* ``workspace`` – ephemeral per-execution directories.
* ``docker_backend`` – the Docker SDK seam.
* ``images`` – image cache with single-flight pulls.
* ``admission`` – limit on simultaneously running environments.
* ``provisioner`` – turns profiles and workspaces into environments.
* ``executor`` – batch executors, real and degraded.
* ``terminal`` – interactive terminal sessions.
* ``runtime`` – wires the components together.
* ``api`` – FastAPI application exposing HTTP and websocket endpoints.
"""

__version__ = "0.1.0"
