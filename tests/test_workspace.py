from __future__ import annotations

from pathlib import Path

import pytest

from coderunner.errors import WorkspaceIOError
from coderunner.languages import LanguageRegistry
from coderunner.workspace import WorkspaceManager


@pytest.fixture
def manager(workspace_root) -> WorkspaceManager:
    return WorkspaceManager(str(workspace_root))


def test_acquire_writes_source_and_stdin(manager):
    python = LanguageRegistry().lookup("python")
    ws = manager.acquire("exec1", python, "print(input())", "Ada")
    assert ws.root_path.is_dir()
    assert ws.source_file.name == "program.py"
    assert ws.source_file.read_text() == "print(input())"
    assert ws.stdin_file.read_text() == "Ada"
    manager.release(ws)
    assert not ws.root_path.exists()


def test_empty_stdin_writes_no_file(manager):
    python = LanguageRegistry().lookup("python")
    ws = manager.acquire("exec2", python, "print(1)", "")
    assert ws.stdin_file is None
    assert sorted(p.name for p in ws.root_path.iterdir()) == ["program.py"]
    manager.release(ws)


def test_java_source_named_after_class(manager):
    java = LanguageRegistry().lookup("java")
    ws = manager.acquire("exec3", java, "public class Greeter { }")
    assert ws.source_file.name == "Greeter.java"
    manager.release(ws)


def test_terminal_workspace_is_empty(manager):
    ws = manager.acquire("session1")
    assert ws.source_file is None
    assert list(ws.root_path.iterdir()) == []
    manager.release(ws)


def test_scoped_releases_on_exception(manager, workspace_root):
    python = LanguageRegistry().lookup("python")
    with pytest.raises(RuntimeError):
        with manager.scoped("exec4", python, "print(1)") as ws:
            assert ws.root_path.exists()
            raise RuntimeError("boom")
    assert not (workspace_root / "exec4").exists()


def test_duplicate_id_is_an_io_error(manager):
    ws = manager.acquire("exec5")
    with pytest.raises(WorkspaceIOError):
        manager.acquire("exec5")
    manager.release(ws)


@pytest.mark.parametrize("bad_id", ["../escape", "", "a/b", ".hidden"])
def test_unsafe_ids_are_rejected(manager, bad_id):
    with pytest.raises(WorkspaceIOError):
        manager.acquire(bad_id)


def test_release_twice_is_harmless(manager):
    ws = manager.acquire("exec6")
    manager.release(ws)
    manager.release(ws)


def test_host_path_translation(workspace_root):
    manager = WorkspaceManager(str(workspace_root), host_base_dir="/srv/host/workspaces")
    ws = manager.acquire("exec7")
    assert manager.host_path(ws) == str(Path("/srv/host/workspaces") / "exec7")
    manager.release(ws)
