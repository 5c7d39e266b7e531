"""
Deploy pipeline.

Replaces the workspace contents and restarts the supervised process as a
strictly ordered list of stages run by one coordinator:

    stop -> clean -> fetch -> install -> start

A failing stage is logged as an error and short-circuits the rest; the
workspace is left as the last successful stage made it. Only one deploy can
be in flight at a time, a second request is rejected with DeployInProgress.
"""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol

from .errors import DeployInProgress, DeployStepFailure
from .jobs import DeployJob, JobManager, JobStatus, StageOutcome
from .logbuffer import LogBuffer
from .process import ProcessSupervisor, classify_stderr, signal_group
from .sandbox import Workspace

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


class SourceKind(Enum):
    ARCHIVE = "archive"
    REPOSITORY = "repository"


class Fetcher(Protocol):
    async def fetch(self, locator, workspace: Path): ...


@dataclass
class DeployRequest:
    """One deploy, consumed once.

    locator is the staged archive path for ARCHIVE and the URL for
    REPOSITORY. staged_path, when set, is removed after the run.
    """

    source_kind: SourceKind
    locator: str
    run_command: str = ""
    install_dependencies: bool = False
    staged_path: Optional[Path] = None

    def describe(self) -> str:
        if self.source_kind == SourceKind.ARCHIVE:
            return Path(self.locator).name
        return str(self.locator)


@dataclass
class DeployContext:
    request: DeployRequest
    command: str = ""


@dataclass
class Stage:
    name: str
    run: Callable[[DeployContext], Awaitable[None]]


class DeployPipeline:
    """Single-flight coordinator of the deploy stages."""

    def __init__(
        self,
        workspace: Workspace,
        logs: LogBuffer,
        supervisor: ProcessSupervisor,
        fetchers: dict[SourceKind, Fetcher],
        jobs: JobManager,
        default_run_command: str = "node index.js",
        install_command: str = "npm install",
        noise_patterns: list[str] = None,
    ):
        self.workspace = workspace
        self.logs = logs
        self.supervisor = supervisor
        self.fetchers = fetchers
        self.jobs = jobs
        self.default_run_command = default_run_command
        self.install_command = install_command
        self.noise_patterns = list(noise_patterns or [])
        self._active: Optional[DeployJob] = None

        self.stages = [
            Stage("stop", self._stop_previous),
            Stage("clean", self._clean_workspace),
            Stage("fetch", self._fetch),
            Stage("install", self._install_dependencies),
            Stage("start", self._start),
        ]

    @property
    def in_progress(self) -> bool:
        return self._active is not None

    @property
    def active_job(self) -> Optional[DeployJob]:
        return self._active

    def deploy(self, request: DeployRequest) -> DeployJob:
        """Accept a deploy and run it in the background.

        Returns the job immediately; progress is visible in the log buffer.
        Must be called from within the running event loop.
        """
        if self._active is not None:
            self.logs.append("warn", "Deploy rejected: another deploy is still running.")
            raise DeployInProgress()

        job = self.jobs.create_job(
            request.source_kind.value,
            request.describe(),
            run_command=request.run_command,
            install_dependencies=request.install_dependencies,
        )
        self._active = job
        self.jobs.run_async_in_background(job, self._run, request, job)
        return job

    async def wait_for(self, job_id: str) -> Optional[DeployJob]:
        return await self.jobs.wait_for(job_id)

    async def _run(self, request: DeployRequest, job: DeployJob) -> DeployJob:
        """Run every stage in order. Never raises.

        Only reached through deploy(), which holds the single-flight slot.
        """
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now()
        context = DeployContext(request=request)

        try:
            for stage in self.stages:
                job.stage = stage.name
                began = time.monotonic()
                try:
                    await stage.run(context)
                except Exception as e:
                    failure = e if isinstance(e, DeployStepFailure) else DeployStepFailure(stage.name, str(e))
                    job.stages.append(
                        StageOutcome(stage.name, False, failure.message, time.monotonic() - began)
                    )
                    job.status = JobStatus.FAILED
                    job.error = str(failure)
                    self.logs.append("error", f"DEPLOY FAILED at {failure.stage}: {failure.message}")
                    logger.error(f"Deploy {job.id} failed at {failure.stage}: {failure.message}")
                    return job
                job.stages.append(StageOutcome(stage.name, True, duration_seconds=time.monotonic() - began))

            job.status = JobStatus.COMPLETED
            logger.info(f"Deploy {job.id} completed")
            return job
        finally:
            job.completed_at = datetime.now()
            job.stage = None
            await self._cleanup_staging(request)
            if self._active is job:
                self._active = None

    async def _stop_previous(self, context: DeployContext):
        await asyncio.to_thread(self.supervisor.stop)

    async def _clean_workspace(self, context: DeployContext):
        self.logs.append("warn", "Cleaning workspace directory...")
        await asyncio.to_thread(self.workspace.reset)

    async def _fetch(self, context: DeployContext):
        request = context.request
        fetcher = self.fetchers.get(request.source_kind)
        if fetcher is None:
            raise DeployStepFailure("fetch", f"No fetcher for {request.source_kind.value} sources")
        await fetcher.fetch(request.locator, self.workspace.root)

    async def _install_dependencies(self, context: DeployContext):
        """Run the install command as its own subprocess.

        The run command is started afterwards whatever the exit code.
        """
        context.command = (context.request.run_command or "").strip() or self.default_run_command
        if not context.request.install_dependencies:
            return

        self.logs.append("info", f"Running {self.install_command} (please wait)...")
        try:
            process = await asyncio.create_subprocess_shell(
                self.install_command,
                cwd=self.workspace.root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            self.logs.append("warn", f"Dependency install could not start: {e}. Starting anyway.")
            return

        def emit(raw: bytes, is_stderr: bool):
            decoded = raw.decode("utf-8", errors="replace").rstrip()
            if decoded:
                kind = classify_stderr(decoded, self.noise_patterns) if is_stderr else "info"
                self.logs.append(kind, decoded)

        # Chunked reads, so a single huge line cannot overrun the reader limit
        async def read_stream(stream, is_stderr: bool):
            pending = b""
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                *lines, pending = (pending + chunk).split(b"\n")
                for line in lines:
                    emit(line, is_stderr)
            if pending:
                emit(pending, is_stderr)

        try:
            await asyncio.gather(
                read_stream(process.stdout, False),
                read_stream(process.stderr, True),
            )
            code = await process.wait()
        except OSError as e:
            self.logs.append("warn", f"Dependency install output failed: {e}. Starting anyway.")
            return
        finally:
            if process.returncode is None:
                logger.warning(f"Killing unfinished install process {process.pid}")
                signal_group(process.pid, signal.SIGKILL)
                await process.wait()

        if code == 0:
            self.logs.append("success", "Dependencies installed (exit code 0).")
        else:
            self.logs.append("warn", f"Dependency install exited with code {code}. Starting anyway.")

    async def _start(self, context: DeployContext):
        command = context.command or self.default_run_command
        await asyncio.to_thread(self.supervisor.start, command)

    async def _cleanup_staging(self, request: DeployRequest):
        """Best-effort removal of the staged source material."""
        staged = request.staged_path
        if not staged:
            return
        try:
            await asyncio.to_thread(os.remove, staged)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove staged upload {staged}: {e}")
