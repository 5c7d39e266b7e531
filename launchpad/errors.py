"""
Error taxonomy for launchpad.

File-manager and deploy-trigger endpoints turn these into structured HTTP
responses; the deploy pipeline turns them into log entries. None of them is
allowed to take the host process down.
"""


class PanelError(Exception):
    """Base class for all launchpad errors."""


class PathEscapeError(PanelError):
    """A client path resolved outside the workspace root."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class NotFound(PanelError):
    """The requested path does not exist."""


class NotADirectory(PanelError):
    """The requested path exists but is not a directory."""


class CannotDeleteRoot(PanelError):
    """Refusal to delete the workspace root itself."""

    def __init__(self, message: str = "Cannot delete the workspace root"):
        super().__init__(message)


class InvalidFileName(PanelError):
    """An uploaded file name is empty or contains path components."""


class AlreadyRunning(PanelError):
    """start() was called while a supervised process is live."""


class NotRunning(PanelError):
    """No live supervised process, or its stdin is closed."""


class ProcessStartError(PanelError):
    """The child process could not be spawned."""


class FetchError(PanelError):
    """Materializing code into the workspace failed."""


class DeployInProgress(PanelError):
    """A deploy was requested while another one is still running."""

    def __init__(self, message: str = "A deploy is already in progress"):
        super().__init__(message)


class DeployStepFailure(PanelError):
    """A deploy stage failed; the remaining stages are skipped."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        self.message = message
        super().__init__(f"{stage}: {message}")
