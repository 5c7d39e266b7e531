"""
File manager over the workspace.

List, upload and delete inside the sandbox. Client paths use '/' for the
workspace root, so leading separators are stripped before resolution; the
sandbox does the rest.
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Union

from .errors import CannotDeleteRoot, InvalidFileName, NotADirectory, NotFound, PathEscapeError
from .logbuffer import LogBuffer
from .sandbox import Workspace

logger = logging.getLogger(__name__)


def client_path(path: str | None) -> str:
    """Workspace-relative form of a client path ('/sub' -> 'sub')."""
    if not path:
        return ""
    return str(path).replace("\\", "/").lstrip("/")


@dataclass
class FileEntry:
    name: str
    is_directory: bool
    size_kb: float

    def to_dict(self) -> dict:
        return {"name": self.name, "is_directory": self.is_directory, "size_kb": self.size_kb}


class FileManager:
    """List/upload/delete operations sharing the deploy workspace."""

    def __init__(self, workspace: Workspace, logs: LogBuffer, staging_dir: Path):
        self.workspace = workspace
        self.logs = logs
        self.staging_dir = Path(staging_dir)

    def list(self, relative_path: str = "") -> list[FileEntry]:
        """Directory entries, directories first."""
        target = self.workspace.resolve(client_path(relative_path))
        if target == self.workspace.root:
            self.workspace.root.mkdir(parents=True, exist_ok=True)
        if not target.exists():
            raise NotFound("Directory not found")
        if not target.is_dir():
            raise NotADirectory("Path is not a directory")

        entries = []
        for item in target.iterdir():
            try:
                stats = item.stat()
            except OSError:
                # Dangling symlink or entry removed while listing
                continue
            entries.append(
                FileEntry(
                    name=item.name,
                    is_directory=item.is_dir(),
                    size_kb=round(stats.st_size / 1024, 1),
                )
            )
        entries.sort(key=lambda e: (not e.is_directory, e.name.lower()))
        return entries

    def upload(self, relative_path: str, data: Union[bytes, BinaryIO], file_name: str) -> Path:
        """Stage data, then move it into the target directory.

        Overwrites an existing file of the same name. The target directory
        must already exist.
        """
        name = os.path.basename(str(file_name or "").replace("\\", "/"))
        if name in ("", ".", ".."):
            raise InvalidFileName("Invalid file name")

        target_dir = self.workspace.resolve(client_path(relative_path))
        if not target_dir.exists():
            raise NotFound("Directory not found")
        if not target_dir.is_dir():
            raise NotADirectory("Path is not a directory")
        destination = self.workspace.resolve(client_path(f"{self.workspace.relative(target_dir)}/{name}"))
        if destination.is_dir():
            raise NotADirectory(f"A directory named {name} already exists")

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        fd, staged = tempfile.mkstemp(dir=self.staging_dir, prefix="upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                if isinstance(data, (bytes, bytearray)):
                    f.write(data)
                else:
                    shutil.copyfileobj(data, f)
            os.chmod(staged, 0o644)
            shutil.move(staged, destination)
        except Exception:
            try:
                os.remove(staged)
            except FileNotFoundError:
                pass
            raise

        self.logs.append("info", f"Uploaded: {self.workspace.relative(destination)}")
        return destination

    def delete(self, relative_path: str, name: str):
        """Recursively remove relative_path/name. The root itself is refused.

        The parent directory goes through the sandbox; the last component is
        not followed, so deleting a symlink removes the link only.
        """
        joined = "/".join(part for part in (client_path(relative_path), client_path(name)) if part)
        parts = [part for part in joined.split("/") if part not in ("", ".")]
        if not parts:
            raise CannotDeleteRoot()
        if ".." in parts:
            raise PathEscapeError()

        parent = self.workspace.resolve("/".join(parts[:-1]))
        target = parent / parts[-1]
        if not os.path.lexists(target):
            raise NotFound("File not found")

        if target.is_symlink() or not target.is_dir():
            target.unlink()
        else:
            shutil.rmtree(target)
        logger.info(f"Deleted {target}")
        self.logs.append("warn", f"Deleted: {self.workspace.relative(target)}")
