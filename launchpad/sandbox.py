"""
Workspace sandbox.

Every client-supplied path is resolved against a single fixed root. Paths
with `..` segments, absolute paths, drive prefixes and symlinks pointing
out of the root are rejected with PathEscapeError.
"""

import logging
import os
import shutil
from pathlib import Path, PureWindowsPath

from .errors import PathEscapeError

logger = logging.getLogger(__name__)


class Workspace:
    """The sandboxed directory holding the deployed program's files."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def resolve(self, relative_path: str | None = None) -> Path:
        """Resolve a client path to an absolute path inside the root.

        An empty or missing path means the root itself.
        """
        if not relative_path:
            return self.root

        normalized = str(relative_path).replace("\\", "/")
        parts = [part for part in normalized.split("/") if part not in ("", ".")]

        if normalized.startswith("/") or PureWindowsPath(str(relative_path)).drive:
            logger.warning("Rejected absolute workspace path")
            raise PathEscapeError()
        if ".." in parts:
            logger.warning("Rejected workspace path with parent traversal")
            raise PathEscapeError()

        candidate = self.root.joinpath(*parts).resolve()
        if not self.contains(candidate):
            logger.warning("Rejected workspace path escaping through a symlink")
            raise PathEscapeError()
        return candidate

    def contains(self, path: Path) -> bool:
        """True when path is the root or one of its descendants."""
        path = Path(path)
        return path == self.root or self.root in path.parents

    def relative(self, path: Path) -> str:
        """Display form of a resolved path, anchored at '/'."""
        rel = Path(path).relative_to(self.root).as_posix()
        return "/" if rel == "." else f"/{rel}"

    def reset(self):
        """Empty the workspace, recreating it if it does not exist."""
        self.root.mkdir(parents=True, exist_ok=True)
        for item in self.root.iterdir():
            if item.is_dir() and not item.is_symlink():
                shutil.rmtree(item)
            else:
                item.unlink()
        logger.info(f"Workspace {self.root} emptied")

    def exists(self) -> bool:
        return os.path.isdir(self.root)
