"""
Resource metrics for the supervised process and the workspace.

Reads CPU and memory for the process tree via psutil and totals the
workspace's disk usage.
"""

import logging
import os
from datetime import datetime

import psutil

logger = logging.getLogger(__name__)


def get_directory_size(path: str) -> float:
    """Get total size of a directory in MB."""
    total = 0
    try:
        for dirpath, dirnames, filenames in os.walk(path):
            for filename in filenames:
                filepath = os.path.join(dirpath, filename)
                try:
                    total += os.path.getsize(filepath)
                except OSError:
                    pass
    except OSError:
        pass
    return total / 1024 / 1024


def get_process_metrics(pid: int | None) -> dict | None:
    """CPU, memory and child count for pid and its descendants.

    Returns None when there is no such process or it cannot be inspected.
    """
    if not pid:
        return None

    try:
        proc = psutil.Process(pid)
        cpu_percent = proc.cpu_percent(interval=0.1)
        memory_mb = proc.memory_info().rss / 1024 / 1024
        started = datetime.fromtimestamp(proc.create_time())

        child_count = 0
        try:
            children = proc.children(recursive=True)
            child_count = len(children)
            for child in children:
                cpu_percent += child.cpu_percent(interval=0.1)
                memory_mb += child.memory_info().rss / 1024 / 1024
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    except psutil.NoSuchProcess:
        logger.debug(f"Process {pid} no longer exists")
        return None
    except psutil.AccessDenied:
        logger.warning(f"Access denied reading metrics for PID {pid}")
        return None

    return {
        "pid": pid,
        "cpu_percent": round(cpu_percent, 1),
        "memory_mb": round(memory_mb, 1),
        "child_processes": child_count,
        "uptime_seconds": (datetime.now() - started).total_seconds(),
    }
