"""
Configuration for the launchpad service.

Loads settings from environment variables with sensible defaults.
All runtime data (workspace, staged uploads, service log) lives under
~/.launchpad/ unless LAUNCHPAD_DATA_DIR says otherwise.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _split_patterns(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class Config:
    """Launchpad configuration."""

    # Paths
    data_dir: Path = Path(os.environ.get("LAUNCHPAD_DATA_DIR", str(Path.home() / ".launchpad")))
    workspace_dir: Path = None
    upload_dir: Path = None
    panel_log: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))
    log_history_size: int = int(os.environ.get("LOG_HISTORY_SIZE", "50"))

    # Server
    host: str = os.environ.get("LAUNCHPAD_HOST", "0.0.0.0")
    port: int = int(os.environ.get("LAUNCHPAD_PORT", os.environ.get("PORT", "8080")))

    # Process management
    stop_grace_seconds: float = float(os.environ.get("STOP_GRACE_SECONDS", "1.5"))
    stop_kill_timeout: float = float(os.environ.get("STOP_KILL_TIMEOUT", "5"))
    stderr_noise_patterns: list[str] = field(
        default_factory=lambda: _split_patterns(
            os.environ.get("STDERR_NOISE_PATTERNS", "npm WARN,npm notice,Cloning into")
        )
    )

    # Deploy
    default_run_command: str = os.environ.get("DEFAULT_RUN_COMMAND", "node index.js")
    install_command: str = os.environ.get("INSTALL_COMMAND", "npm install")
    clone_timeout: int = int(os.environ.get("CLONE_TIMEOUT", "300"))
    max_deploy_history: int = int(os.environ.get("MAX_DEPLOY_HISTORY", "20"))

    def __post_init__(self):
        """Derive paths that default to locations under data_dir."""
        self.data_dir = Path(self.data_dir)
        if self.workspace_dir is None:
            workspace = os.environ.get("LAUNCHPAD_WORKSPACE")
            self.workspace_dir = Path(workspace) if workspace else self.data_dir / "workspace"
        if self.upload_dir is None:
            self.upload_dir = self.data_dir / "uploads"
        if self.panel_log is None:
            self.panel_log = self.data_dir / "launchpad.log"
        self.workspace_dir = Path(self.workspace_dir).resolve()
        self.upload_dir = Path(self.upload_dir)

    def ensure_dirs(self):
        """Create the data, workspace and upload directories."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        self.upload_dir.mkdir(parents=True, exist_ok=True)


config = Config()
