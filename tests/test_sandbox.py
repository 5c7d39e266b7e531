import os

import pytest

from launchpad.errors import PathEscapeError
from launchpad.sandbox import Workspace


@pytest.mark.parametrize(
    "path",
    [
        "..",
        "../",
        "../etc/passwd",
        "sub/../../outside",
        "sub/../file.txt",
        "..\\..\\windows",
        "/etc/passwd",
        "/",
        "\\absolute",
        "C:\\Windows\\system32",
        "C:relative",
    ],
)
def test_resolve_rejects_traversal_and_absolute_paths(workspace, path):
    with pytest.raises(PathEscapeError) as exc:
        workspace.resolve(path)
    assert str(exc.value) == "Access denied"


@pytest.mark.parametrize("path", ["sub", "sub/file.txt", "a/b/c", "./sub", "sub/./x", "sub\\nested", "sub//x"])
def test_resolve_inside_root_is_prefixed_by_root(workspace, path):
    resolved = workspace.resolve(path)
    assert workspace.contains(resolved)
    assert str(resolved).startswith(str(workspace.root) + os.sep)


@pytest.mark.parametrize("path", ["", None, ".", "./", ".//."])
def test_empty_and_dot_paths_resolve_to_root(workspace, path):
    assert workspace.resolve(path) == workspace.root


def test_backslashes_are_normalized(workspace):
    assert workspace.resolve("sub\\nested\\file.txt") == workspace.root / "sub" / "nested" / "file.txt"


def test_symlink_escape_is_rejected(workspace, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("secret")
    os.symlink(outside, workspace.root / "link")

    with pytest.raises(PathEscapeError):
        workspace.resolve("link")
    with pytest.raises(PathEscapeError):
        workspace.resolve("link/secret.txt")


def test_symlink_inside_root_is_allowed(workspace):
    (workspace.root / "real").mkdir()
    os.symlink(workspace.root / "real", workspace.root / "alias")
    assert workspace.resolve("alias") == workspace.root / "real"


def test_relative_display_form(workspace):
    assert workspace.relative(workspace.root) == "/"
    assert workspace.relative(workspace.root / "sub" / "a.txt") == "/sub/a.txt"


def test_reset_empties_and_recreates(tmp_path):
    ws = Workspace(tmp_path / "ws")
    ws.reset()
    assert ws.exists()

    (ws.root / "dir" / "nested").mkdir(parents=True)
    (ws.root / "file.txt").write_text("x")
    ws.reset()
    assert list(ws.root.iterdir()) == []


def test_reset_does_not_follow_symlinked_directories(workspace, tmp_path):
    outside = tmp_path / "keep"
    outside.mkdir()
    (outside / "important.txt").write_text("keep me")
    os.symlink(outside, workspace.root / "link")

    workspace.reset()

    assert (outside / "important.txt").exists()
    assert list(workspace.root.iterdir()) == []
