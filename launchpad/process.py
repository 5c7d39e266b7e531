"""
Process supervisor for the deployed program.

Owns at most one child process. Starts it in its own session so the whole
process tree can be signalled, pumps stdout/stderr into the log buffer from
reader threads, forwards operator input to stdin, and terminates the tree on
stop with a group-kill first and a direct-child fallback.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from .errors import AlreadyRunning, NotRunning, ProcessStartError
from .logbuffer import LogBuffer

logger = logging.getLogger(__name__)

# Upper bound for reader threads to drain the pipes after the child exits.
_DRAIN_TIMEOUT = 2.0


class ProcessState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    TERMINATING = "terminating"


def classify_stderr(line: str, noise_patterns: list[str]) -> str:
    """Log kind for a stderr line: 'input' for known tool chatter, else 'error'."""
    if any(pattern in line for pattern in noise_patterns):
        return "input"
    return "error"


@dataclass
class SupervisedProcess:
    """The single live child process."""

    command: str
    process: subprocess.Popen
    started_at: datetime = field(default_factory=datetime.now)
    exit_code: Optional[int] = None
    exited: threading.Event = field(default_factory=threading.Event)
    finished: threading.Event = field(default_factory=threading.Event)
    readers: list[threading.Thread] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "command": self.command,
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": (datetime.now() - self.started_at).total_seconds(),
            "exit_code": self.exit_code,
        }


def group_alive(pgid: int) -> bool:
    """True while any member of the process group still exists."""
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except (OSError, AttributeError):
        return False
    return True


def signal_group(pgid: int, sig: signal.Signals) -> bool:
    """Signal a whole process group. A group that is already gone counts as signalled."""
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        return True
    except (PermissionError, OSError, AttributeError) as e:
        # AttributeError: no killpg on this platform
        logger.warning(f"Group signal {sig} to {pgid} failed: {e}")
        return False
    return True


def signal_process_tree(process: subprocess.Popen, sig: signal.Signals):
    """Signal the child's process group, falling back to the child alone.

    The child leads its own session, so its pid is the group id even after
    it has exited.
    """
    if signal_group(process.pid, sig):
        return

    try:
        process.send_signal(sig)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning(f"Signal to PID {process.pid} failed, treating as terminated: {e}")


class ProcessSupervisor:
    """Supervises the single deployed process.

    State machine: IDLE -> STARTING -> RUNNING -> TERMINATING -> IDLE. A child
    exiting on its own goes straight from RUNNING back to IDLE.
    """

    def __init__(
        self,
        workspace_dir: Path,
        logs: LogBuffer,
        noise_patterns: list[str] = None,
        stop_grace_seconds: float = 1.5,
        stop_kill_timeout: float = 5.0,
    ):
        self.workspace_dir = Path(workspace_dir)
        self.logs = logs
        self.noise_patterns = list(noise_patterns or [])
        self.stop_grace_seconds = stop_grace_seconds
        self.stop_kill_timeout = stop_kill_timeout
        self._state = ProcessState.IDLE
        self._current: Optional[SupervisedProcess] = None
        self._last_exit_code: Optional[int] = None
        # Groups whose leader exited on its own while members lived on
        self._stray_groups: set[int] = set()
        self._lock = threading.Lock()

    @property
    def state(self) -> ProcessState:
        with self._lock:
            return self._state

    @property
    def current(self) -> Optional[SupervisedProcess]:
        with self._lock:
            return self._current

    def is_running(self) -> bool:
        return self.state == ProcessState.RUNNING

    def get_pid(self) -> int | None:
        with self._lock:
            return self._current.pid if self._current else None

    def start(self, command: str) -> SupervisedProcess:
        """Spawn command in the workspace. Raises AlreadyRunning unless idle."""
        with self._lock:
            if self._state != ProcessState.IDLE:
                raise AlreadyRunning(f"Cannot start while {self._state.value}")
            self._state = ProcessState.STARTING

        self.logs.append("success", f"Starting process: {command}")

        try:
            process = subprocess.Popen(
                command,
                shell=True,
                cwd=self.workspace_dir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=os.environ.copy(),
                start_new_session=True,  # Own process group, killable as a tree
            )
        except (OSError, ValueError) as e:
            with self._lock:
                self._state = ProcessState.IDLE
            raise ProcessStartError(f"Failed to start process: {e}") from e

        supervised = SupervisedProcess(command=command, process=process)
        supervised.readers = [
            threading.Thread(
                target=self._capture_output,
                args=(process.stdout, False),
                name=f"stdout-{process.pid}",
                daemon=True,
            ),
            threading.Thread(
                target=self._capture_output,
                args=(process.stderr, True),
                name=f"stderr-{process.pid}",
                daemon=True,
            ),
        ]

        with self._lock:
            self._current = supervised
            self._state = ProcessState.RUNNING

        for reader in supervised.readers:
            reader.start()
        threading.Thread(
            target=self._wait_for_exit,
            args=(supervised,),
            name=f"waiter-{process.pid}",
            daemon=True,
        ).start()

        logger.info(f"Started process with PID {process.pid}: {command}")
        return supervised

    def write_input(self, line: str):
        """Send one line to the child's stdin and echo it to operators."""
        with self._lock:
            supervised = self._current if self._state == ProcessState.RUNNING else None

        if supervised is None:
            raise NotRunning("Process is offline. Start a deploy first.")

        try:
            supervised.process.stdin.write(f"{line}\n".encode("utf-8"))
            supervised.process.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as e:
            raise NotRunning(f"Process is not accepting input: {e}") from e

        self.logs.append("input", f"$ {line}")

    def stop(self) -> bool:
        """Terminate the supervised process tree.

        Returns False when there was nothing to stop. Waits for the exit event
        up to the grace period, then escalates to SIGKILL. Members of a group
        whose leader already exited are terminated too, and a stop already in
        flight is waited for rather than skipped.
        """
        with self._lock:
            state = self._state
            supervised = self._current
            if state == ProcessState.RUNNING and supervised is not None:
                self._state = ProcessState.TERMINATING
            strays = self._stray_groups - ({supervised.pid} if supervised else set())
            self._stray_groups = set()

        stopped = False
        if state == ProcessState.RUNNING and supervised is not None:
            self._stop_supervised(supervised)
            stopped = True
        elif state == ProcessState.TERMINATING and supervised is not None:
            logger.info(f"Waiting for in-flight stop of process {supervised.pid}")
            supervised.finished.wait(self.stop_grace_seconds + self.stop_kill_timeout + _DRAIN_TIMEOUT)
            stopped = True

        for pgid in strays:
            if group_alive(pgid):
                self.logs.append("warn", f"Stopping leftover processes of group {pgid}...")
                self._terminate_group(pgid)
                stopped = True
        return stopped

    def _terminate_group(self, pgid: int):
        """SIGTERM a group without a live leader, SIGKILL whatever survives the grace period."""
        deadline = time.monotonic() + self.stop_grace_seconds
        signal_group(pgid, signal.SIGTERM)
        while group_alive(pgid) and time.monotonic() < deadline:
            time.sleep(0.05)

        if group_alive(pgid):
            logger.warning(f"Process group {pgid} did not stop gracefully, forcing kill")
            signal_group(pgid, signal.SIGKILL)
            deadline = time.monotonic() + self.stop_kill_timeout
            while group_alive(pgid) and time.monotonic() < deadline:
                time.sleep(0.05)
        logger.info(f"Stopped process group {pgid}")

    def _stop_supervised(self, supervised: SupervisedProcess):
        self.logs.append("warn", "Stopping previous process...")
        process = supervised.process

        try:
            process.stdin.close()
        except (OSError, ValueError):
            pass

        deadline = time.monotonic() + self.stop_grace_seconds
        signal_process_tree(process, signal.SIGTERM)
        supervised.exited.wait(self.stop_grace_seconds)
        # Descendants may outlive a shell wrapper that died on SIGTERM
        while group_alive(process.pid) and time.monotonic() < deadline:
            time.sleep(0.05)

        if not supervised.exited.is_set() or group_alive(process.pid):
            logger.warning(f"Process {process.pid} did not stop gracefully, forcing kill")
            signal_process_tree(process, signal.SIGKILL)
            if not supervised.exited.wait(self.stop_kill_timeout):
                logger.error(f"Process {process.pid} still alive after SIGKILL")

        # Let the exit entry land before the slot is handed to the next start
        supervised.finished.wait(_DRAIN_TIMEOUT)

        with self._lock:
            if self._current is supervised:
                self._current = None
                self._state = ProcessState.IDLE

        logger.info(f"Stopped process {process.pid}")

    def status(self) -> dict:
        with self._lock:
            result = {
                "state": self._state.value,
                "last_exit_code": self._last_exit_code,
                "process": self._current.to_dict() if self._current else None,
            }
        return result

    def _capture_output(self, stream, is_stderr: bool):
        """Read one pipe line by line into the log buffer until EOF."""
        try:
            for line in iter(stream.readline, b""):
                decoded = line.decode("utf-8", errors="replace").rstrip()
                if not decoded:
                    continue
                if is_stderr:
                    kind = classify_stderr(decoded, self.noise_patterns)
                else:
                    kind = "info"
                self.logs.append(kind, decoded)
        except (OSError, ValueError) as e:
            logger.error(f"Error in log capture: {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _wait_for_exit(self, supervised: SupervisedProcess):
        """Record the exit code once the child ends and return to IDLE."""
        code = supervised.process.wait()
        supervised.exit_code = code
        supervised.exited.set()
        try:
            supervised.process.stdin.close()
        except (OSError, ValueError):
            pass

        for reader in supervised.readers:
            reader.join(_DRAIN_TIMEOUT)

        self.logs.append("warn", f"Process exited with code {code}")
        with self._lock:
            self._last_exit_code = code
            if self._current is supervised:
                if self._state == ProcessState.RUNNING and group_alive(supervised.pid):
                    self._stray_groups.add(supervised.pid)
                    logger.warning(f"Process {supervised.pid} exited but members of its group are still running")
                self._current = None
                self._state = ProcessState.IDLE
        supervised.finished.set()
        logger.info(f"Process {supervised.pid} exited with code {code}")
