"""
Launchpad FastAPI application.

REST API for deploying code (archive upload or git repository), controlling
the supervised process, browsing the workspace, and a WebSocket channel that
streams the log buffer to operators and accepts terminal input.
"""

import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from . import __version__
from .config import Config, config as default_config
from .deploy import DeployPipeline, DeployRequest, SourceKind
from .errors import (
    CannotDeleteRoot,
    DeployInProgress,
    InvalidFileName,
    NotADirectory,
    NotFound,
    NotRunning,
    PanelError,
    PathEscapeError,
)
from .fetchers import ArchiveFetcher, RepositoryFetcher
from .files import FileManager
from .jobs import JobManager, JobStatus
from .logbuffer import LogBuffer
from .monitor import get_directory_size, get_process_metrics
from .process import ProcessSupervisor
from .realtime import ObserverHub
from .sandbox import Workspace

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(cfg: Config):
    """Root logger with a rotating file handler and a console handler."""
    log_formatter = logging.Formatter(LOG_FORMAT)

    cfg.panel_log.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        cfg.panel_log,
        maxBytes=cfg.log_max_bytes,
        backupCount=cfg.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)

    logging.basicConfig(
        level=logging.INFO,
        handlers=[file_handler, console_handler],
    )


@dataclass
class PanelState:
    """Every long-lived component, owned by one application instance."""

    config: Config
    workspace: Workspace
    logs: LogBuffer
    supervisor: ProcessSupervisor
    jobs: JobManager
    pipeline: DeployPipeline
    files: FileManager
    hub: ObserverHub


def build_panel(cfg: Config) -> PanelState:
    cfg.ensure_dirs()
    workspace = Workspace(cfg.workspace_dir)
    logs = LogBuffer(capacity=cfg.log_history_size)
    supervisor = ProcessSupervisor(
        workspace.root,
        logs,
        noise_patterns=cfg.stderr_noise_patterns,
        stop_grace_seconds=cfg.stop_grace_seconds,
        stop_kill_timeout=cfg.stop_kill_timeout,
    )
    jobs = JobManager(max_completed=cfg.max_deploy_history)
    pipeline = DeployPipeline(
        workspace,
        logs,
        supervisor,
        fetchers={
            SourceKind.ARCHIVE: ArchiveFetcher(logs),
            SourceKind.REPOSITORY: RepositoryFetcher(logs, timeout=cfg.clone_timeout),
        },
        jobs=jobs,
        default_run_command=cfg.default_run_command,
        install_command=cfg.install_command,
        noise_patterns=cfg.stderr_noise_patterns,
    )
    return PanelState(
        config=cfg,
        workspace=workspace,
        logs=logs,
        supervisor=supervisor,
        jobs=jobs,
        pipeline=pipeline,
        files=FileManager(workspace, logs, cfg.upload_dir),
        hub=ObserverHub(logs, supervisor),
    )


# Pydantic models for API
class RepositoryDeploy(BaseModel):
    repository_url: str = Field(..., description="Git URL to clone")
    run_command: Optional[str] = Field(None, description="Command to run; defaults to the platform entrypoint")
    install_dependencies: bool = Field(False, description="Run the install step before starting")


class FileDelete(BaseModel):
    name: str
    current_path: str = "/"


class TerminalInput(BaseModel):
    line: str


def _file_error(panel: PanelState, e: Exception, action: str) -> HTTPException:
    """Map a file-manager failure to an HTTP error and surface it to operators."""
    if isinstance(e, PathEscapeError):
        status, message = 403, "Access denied"
    elif isinstance(e, NotFound):
        status, message = 404, str(e)
    elif isinstance(e, (NotADirectory, CannotDeleteRoot, InvalidFileName)):
        status, message = 400, str(e)
    else:
        logger.exception(f"Unexpected error during {action}")
        status, message = 500, f"Error during {action}: {e}"
    panel.logs.append("error", f"{action.capitalize()} failed: {message}")
    return HTTPException(status_code=status, detail=message)


def create_app(cfg: Config = None) -> FastAPI:
    """Build the application around a fresh PanelState."""
    cfg = cfg or default_config
    panel = build_panel(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting launchpad, workspace at {panel.workspace.root}")
        yield
        logger.info("Shutting down launchpad...")
        await panel.jobs.cancel_all()
        panel.supervisor.stop()

    app = FastAPI(
        title="Launchpad",
        description="Deploy, run and watch a single program remotely",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.panel = panel

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_panel(request: Request) -> PanelState:
        return request.app.state.panel

    # Deploy
    @app.post("/api/deploy/archive")
    async def deploy_archive(
        request: Request,
        file: UploadFile = File(...),
        run_command: str = Form(""),
        install_dependencies: bool = Form(False),
    ):
        """Stage an uploaded ZIP and deploy it in the background."""
        panel = get_panel(request)
        if panel.pipeline.in_progress:
            raise HTTPException(status_code=409, detail=str(DeployInProgress()))

        name = os.path.basename(file.filename or "upload.zip") or "upload.zip"
        staged = panel.config.upload_dir / f"{uuid.uuid4().hex[:8]}-{name}"
        panel.config.upload_dir.mkdir(parents=True, exist_ok=True)
        with open(staged, "wb") as f:
            while chunk := await file.read(1024 * 1024):
                f.write(chunk)

        deploy = DeployRequest(
            source_kind=SourceKind.ARCHIVE,
            locator=str(staged),
            run_command=run_command,
            install_dependencies=install_dependencies,
            staged_path=staged,
        )
        try:
            job = panel.pipeline.deploy(deploy)
        except DeployInProgress as e:
            staged.unlink(missing_ok=True)
            raise HTTPException(status_code=409, detail=str(e))
        return {"success": True, "message": "Deploy started", "job_id": job.id}

    @app.post("/api/deploy/repository")
    async def deploy_repository(request: Request, data: RepositoryDeploy):
        """Clone a repository and deploy it in the background."""
        panel = get_panel(request)
        url = data.repository_url.strip()
        if not url:
            raise HTTPException(status_code=400, detail="Repository URL is empty")

        deploy = DeployRequest(
            source_kind=SourceKind.REPOSITORY,
            locator=url,
            run_command=data.run_command or "",
            install_dependencies=data.install_dependencies,
        )
        try:
            job = panel.pipeline.deploy(deploy)
        except DeployInProgress as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"success": True, "message": "Repository deploy started", "job_id": job.id}

    @app.get("/api/deploy/jobs")
    async def list_deploy_jobs(request: Request, status: Optional[str] = None):
        """List deploy jobs, newest first."""
        job_status = None
        if status:
            try:
                job_status = JobStatus(status)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
        return [j.to_dict() for j in get_panel(request).jobs.list_jobs(job_status)]

    @app.get("/api/deploy/jobs/{job_id}")
    async def get_deploy_job(request: Request, job_id: str):
        job = get_panel(request).jobs.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
        return job.to_dict()

    # Files
    @app.get("/api/files")
    async def list_files(request: Request, path: str = Query("/")):
        panel = get_panel(request)
        try:
            entries = await asyncio.to_thread(panel.files.list, path)
            return [entry.to_dict() for entry in entries]
        except (PanelError, OSError) as e:
            raise _file_error(panel, e, "listing")

    @app.post("/api/files/upload")
    async def upload_file(
        request: Request,
        file: UploadFile = File(...),
        current_path: str = Form("/"),
    ):
        panel = get_panel(request)
        try:
            await asyncio.to_thread(panel.files.upload, current_path, file.file, file.filename)
        except (PanelError, OSError) as e:
            raise _file_error(panel, e, "upload")
        return {"success": True}

    @app.delete("/api/files")
    async def delete_file(request: Request, data: FileDelete):
        panel = get_panel(request)
        if not data.name:
            raise HTTPException(status_code=400, detail="File name is required")
        try:
            await asyncio.to_thread(panel.files.delete, data.current_path, data.name)
        except (PanelError, OSError) as e:
            raise _file_error(panel, e, "delete")
        return {"success": True}

    # Process control
    @app.get("/api/process")
    async def get_process(request: Request):
        panel = get_panel(request)
        result = panel.supervisor.status()
        result["metrics"] = await asyncio.to_thread(get_process_metrics, panel.supervisor.get_pid())
        return result

    @app.post("/api/process/stop")
    async def stop_process(request: Request):
        panel = get_panel(request)
        if panel.pipeline.in_progress:
            raise HTTPException(status_code=409, detail=str(DeployInProgress()))
        stopped = await asyncio.to_thread(panel.supervisor.stop)
        return {"status": "stopped" if stopped else "not_running"}

    @app.post("/api/process/input")
    async def send_input(request: Request, data: TerminalInput):
        panel = get_panel(request)
        try:
            await asyncio.to_thread(panel.supervisor.write_input, data.line)
        except NotRunning as e:
            panel.logs.append("warn", str(e))
            raise HTTPException(status_code=409, detail=str(e))
        return {"success": True}

    # Logs
    @app.get("/api/logs")
    async def get_logs(request: Request):
        return [e.to_dict() for e in get_panel(request).logs.snapshot()]

    @app.delete("/api/logs")
    async def clear_logs(request: Request):
        return [e.to_dict() for e in get_panel(request).logs.clear()]

    @app.get("/api/status")
    async def get_status(request: Request):
        panel = get_panel(request)
        active = panel.pipeline.active_job
        workspace_mb = await asyncio.to_thread(get_directory_size, str(panel.workspace.root))
        return {
            "version": __version__,
            "workspace": str(panel.workspace.root),
            "workspace_mb": round(workspace_mb, 2),
            "process_state": panel.supervisor.state.value,
            "deploy_in_progress": active is not None,
            "active_job": active.id if active else None,
            "observers": panel.hub.connection_count,
        }

    @app.websocket("/ws")
    async def observer_channel(websocket: WebSocket):
        await websocket.app.state.panel.hub.serve(websocket)

    return app
