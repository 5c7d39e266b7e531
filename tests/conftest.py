import asyncio
import shlex
import sys
import time
import zipfile
from pathlib import Path

import pytest

from launchpad.config import Config
from launchpad.deploy import DeployPipeline, SourceKind
from launchpad.fetchers import ArchiveFetcher, RepositoryFetcher
from launchpad.files import FileManager
from launchpad.jobs import JobManager
from launchpad.logbuffer import LogBuffer
from launchpad.process import ProcessSupervisor
from launchpad.sandbox import Workspace

PY = shlex.quote(sys.executable)
NOISE = ["npm WARN", "npm notice", "Cloning into"]


def py_command(code: str) -> str:
    """Shell command running a Python one-liner with the test interpreter."""
    return f"{PY} -c {shlex.quote(code)}"


def make_zip(path: Path, files: dict[str, str]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return path


def entries(logs: LogBuffer) -> list[tuple[str, str]]:
    return [(e.kind, e.text) for e in logs.snapshot()]


def assert_subsequence(logs: LogBuffer, expected: list[tuple[str, str]]):
    """Each (kind, text fragment) must appear, in this order."""
    remaining = list(expected)
    for kind, text in entries(logs):
        if remaining and kind == remaining[0][0] and remaining[0][1] in text:
            remaining.pop(0)
    assert not remaining, f"missing {remaining} in {entries(logs)}"


@pytest.fixture
def wait_until():
    def _wait(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def async_wait_until():
    async def _wait(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def cfg(tmp_path):
    config = Config(
        data_dir=tmp_path / "data",
        workspace_dir=tmp_path / "workspace",
        stop_grace_seconds=1.0,
        stop_kill_timeout=3.0,
        stderr_noise_patterns=list(NOISE),
        default_run_command="node index.js",
        install_command=py_command("print('installed')"),
        log_history_size=200,
    )
    config.ensure_dirs()
    return config


@pytest.fixture
def logs():
    return LogBuffer(capacity=200)


@pytest.fixture
def workspace(cfg):
    return Workspace(cfg.workspace_dir)


@pytest.fixture
def supervisor(workspace, logs, cfg):
    sup = ProcessSupervisor(
        workspace.root,
        logs,
        noise_patterns=cfg.stderr_noise_patterns,
        stop_grace_seconds=cfg.stop_grace_seconds,
        stop_kill_timeout=cfg.stop_kill_timeout,
    )
    yield sup
    sup.stop()


@pytest.fixture
def file_manager(workspace, logs, cfg):
    return FileManager(workspace, logs, cfg.upload_dir)


@pytest.fixture
def pipeline(workspace, logs, supervisor, cfg):
    return DeployPipeline(
        workspace,
        logs,
        supervisor,
        fetchers={
            SourceKind.ARCHIVE: ArchiveFetcher(logs),
            SourceKind.REPOSITORY: RepositoryFetcher(logs, timeout=60),
        },
        jobs=JobManager(max_completed=cfg.max_deploy_history),
        default_run_command=cfg.default_run_command,
        install_command=cfg.install_command,
        noise_patterns=cfg.stderr_noise_patterns,
    )
