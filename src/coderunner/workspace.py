"""Ephemeral workspaces.

Each execution or terminal session gets its own directory under the
configured workspace root, holding the source file and, when stdin is
non-empty, a sibling ``input.txt``.  The directory is bind-mounted into the
isolated environment at ``/code``.

Use :meth:`WorkspaceManager.scoped` rather than pairing :meth:`acquire` and
:meth:`release` by hand; it guarantees release on every exit path.
"""

from __future__ import annotations

import contextlib
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .errors import WorkspaceIOError
from .languages import STDIN_FILENAME, LanguageProfile


logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


@dataclass(frozen=True)
class Workspace:
    id: str
    root_path: Path
    source_file: Optional[Path] = None
    stdin_file: Optional[Path] = None


class WorkspaceManager:
    """Create and destroy workspaces on the local filesystem."""

    def __init__(self, base_dir: str, host_base_dir: Optional[str] = None) -> None:
        self.base_dir = Path(base_dir)
        self.host_base_dir = Path(host_base_dir) if host_base_dir else None
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceIOError(f"Cannot create workspace root {self.base_dir}: {exc}")

    def _workspace_dir(self, workspace_id: str) -> Path:
        if not _SAFE_ID.match(workspace_id):
            raise WorkspaceIOError(f"Invalid workspace id: {workspace_id!r}")
        return self.base_dir / workspace_id

    def host_path(self, workspace: Workspace) -> str:
        """Path of the workspace as the Docker daemon sees it."""
        if self.host_base_dir is None:
            return str(workspace.root_path.resolve())
        return str(self.host_base_dir / workspace.root_path.relative_to(self.base_dir))

    def acquire(
        self,
        workspace_id: str,
        profile: Optional[LanguageProfile] = None,
        source_code: Optional[str] = None,
        stdin: Optional[str] = None,
    ) -> Workspace:
        """Create the workspace directory and write the source and stdin files.

        Without a profile only the empty directory is created; terminal
        sessions use that form.  Anything written before a failure is
        removed again before :class:`WorkspaceIOError` is raised.
        """
        root = self._workspace_dir(workspace_id)
        try:
            root.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise WorkspaceIOError(f"Cannot create workspace {root}: {exc}", workspace_id=workspace_id)

        source_file = None
        stdin_file = None
        try:
            if profile is not None:
                source_file = root / profile.source_filename(source_code or "")
                source_file.write_text(source_code or "", encoding="utf-8")
            if stdin:
                stdin_file = root / STDIN_FILENAME
                stdin_file.write_text(stdin, encoding="utf-8")
            # Containers may run as a different uid than the service.
            root.chmod(0o777)
        except OSError as exc:
            self._remove(root)
            raise WorkspaceIOError(f"Cannot write workspace {root}: {exc}", workspace_id=workspace_id)

        logger.debug("[workspace] created %s (source=%s, stdin=%s)", root, source_file, bool(stdin_file))
        return Workspace(id=workspace_id, root_path=root, source_file=source_file, stdin_file=stdin_file)

    def release(self, workspace: Workspace) -> None:
        """Recursively remove the workspace.  Failures are logged, not raised."""
        self._remove(workspace.root_path)

    def _remove(self, root: Path) -> None:
        try:
            shutil.rmtree(root)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("[workspace] failed to remove %s: %s", root, exc)
        else:
            logger.debug("[workspace] removed %s", root)

    @contextlib.contextmanager
    def scoped(
        self,
        workspace_id: str,
        profile: Optional[LanguageProfile] = None,
        source_code: Optional[str] = None,
        stdin: Optional[str] = None,
    ) -> Iterator[Workspace]:
        workspace = self.acquire(workspace_id, profile, source_code, stdin)
        try:
            yield workspace
        finally:
            self.release(workspace)
