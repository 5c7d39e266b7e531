"""
Fetch strategies that materialize code into the workspace.

ArchiveFetcher extracts an uploaded ZIP archive; RepositoryFetcher clones a
git repository. Both only promise to populate the workspace or raise
FetchError.
"""

import asyncio
import logging
import re
import zipfile
from pathlib import Path

from .errors import FetchError
from .logbuffer import LogBuffer

logger = logging.getLogger(__name__)

_URL_PATTERNS = [
    re.compile(r"^(https?|ssh|git|file)://[^\s]+$"),
    re.compile(r"^[\w.-]+@[\w.-]+:[^\s]+$"),
]


def validate_repo_url(url: str) -> bool:
    """Check that url looks like a git remote and cannot pose as a git option."""
    if not url or url.startswith("-"):
        return False
    return any(pattern.match(url) for pattern in _URL_PATTERNS)


def _extract_zip(archive_path: Path, workspace: Path) -> int:
    root = workspace.resolve()
    with zipfile.ZipFile(archive_path) as zf:
        members = zf.infolist()
        for member in members:
            target = (root / member.filename).resolve()
            if target != root and root not in target.parents:
                raise FetchError(f"Archive member escapes the workspace: {member.filename}")
        zf.extractall(root)
    return len(members)


class ArchiveFetcher:
    """Extracts a staged ZIP archive into the workspace."""

    def __init__(self, logs: LogBuffer):
        self.logs = logs

    async def fetch(self, locator, workspace: Path):
        archive_path = Path(locator)
        self.logs.append("info", f"Extracting archive {archive_path.name}...")
        if not archive_path.is_file():
            raise FetchError(f"Archive not found: {archive_path.name}")
        try:
            count = await asyncio.to_thread(_extract_zip, archive_path, Path(workspace))
        except zipfile.BadZipFile as e:
            raise FetchError(f"Invalid ZIP archive: {e}") from e
        except OSError as e:
            raise FetchError(f"Extraction failed: {e}") from e
        logger.info(f"Extracted {count} entries from {archive_path.name}")


class RepositoryFetcher:
    """Clones a git repository into the (empty) workspace."""

    def __init__(self, logs: LogBuffer, timeout: float = 300):
        self.logs = logs
        self.timeout = timeout

    async def fetch(self, locator, workspace: Path):
        url = str(locator).strip()
        if not validate_repo_url(url):
            raise FetchError("Invalid repository URL")

        self.logs.append("info", f"Cloning {url}...")
        try:
            # List args, no shell
            process = await asyncio.create_subprocess_exec(
                "git", "clone", "--depth", "1", url, ".",
                cwd=workspace,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise FetchError(f"Could not run git: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise FetchError(f"git clone timed out after {self.timeout}s")

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip().splitlines()
            raise FetchError(f"git clone failed: {message[-1] if message else process.returncode}")
        logger.info(f"Cloned {url} into {workspace}")
