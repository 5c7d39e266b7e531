import os
from datetime import datetime, timedelta

import pytest

from launchpad.jobs import JobManager, JobStatus, StageOutcome
from launchpad.monitor import get_directory_size, get_process_metrics


def test_job_to_dict_reports_stages():
    manager = JobManager()
    job = manager.create_job("archive", "bot.zip", run_command="node index.js")
    job.stages.append(StageOutcome("stop", True, duration_seconds=0.01234))

    data = job.to_dict()
    assert data["status"] == "pending"
    assert data["source"] == "bot.zip"
    assert data["stages"] == [{"name": "stop", "ok": True, "message": None, "duration_seconds": 0.012}]
    assert data["duration_seconds"] is None


def test_old_finished_jobs_are_pruned():
    manager = JobManager(max_completed=2)
    finished = []
    for i in range(3):
        job = manager.create_job("repository", f"https://host/r{i}")
        job.status = JobStatus.COMPLETED
        job.completed_at = datetime.now() + timedelta(seconds=i)
        finished.append(job)

    manager.create_job("archive", "new.zip")

    assert manager.get_job(finished[0].id) is None
    assert len(manager.list_jobs(JobStatus.COMPLETED)) == 2
    assert len(manager.list_jobs()) == 3


@pytest.mark.asyncio
async def test_background_task_is_awaitable():
    manager = JobManager()
    job = manager.create_job("archive", "bot.zip")

    async def work(j):
        j.status = JobStatus.COMPLETED

    manager.run_async_in_background(job, work, job)
    assert (await manager.wait_for(job.id)).status == JobStatus.COMPLETED


def test_directory_size(tmp_path):
    (tmp_path / "a.bin").write_bytes(b"x" * 1024 * 1024)
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "b.bin").write_bytes(b"x" * 1024 * 1024)
    assert get_directory_size(str(tmp_path)) == pytest.approx(2.0)


def test_process_metrics_for_live_and_missing_process():
    metrics = get_process_metrics(os.getpid())
    assert metrics["pid"] == os.getpid()
    assert metrics["memory_mb"] > 0
    assert get_process_metrics(None) is None
