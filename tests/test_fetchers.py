import shutil
import subprocess
import zipfile

import pytest

from conftest import make_zip
from launchpad.errors import FetchError
from launchpad.fetchers import ArchiveFetcher, RepositoryFetcher, validate_repo_url


@pytest.mark.asyncio
async def test_archive_is_extracted_into_workspace(workspace, logs, tmp_path):
    archive = make_zip(tmp_path / "bot.zip", {"index.js": "console.log('hi')", "lib/util.js": "//"})

    await ArchiveFetcher(logs).fetch(str(archive), workspace.root)

    assert (workspace.root / "index.js").read_text() == "console.log('hi')"
    assert (workspace.root / "lib" / "util.js").exists()
    assert logs.snapshot()[0].kind == "info"
    assert "Extracting" in logs.snapshot()[0].text


@pytest.mark.asyncio
async def test_archive_member_escaping_workspace_is_rejected(workspace, logs, tmp_path):
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("../escaped.txt", "gotcha")

    with pytest.raises(FetchError):
        await ArchiveFetcher(logs).fetch(str(archive), workspace.root)
    assert not (workspace.root.parent / "escaped.txt").exists()


@pytest.mark.asyncio
async def test_invalid_archive(workspace, logs, tmp_path):
    bogus = tmp_path / "bogus.zip"
    bogus.write_bytes(b"this is not a zip")
    with pytest.raises(FetchError):
        await ArchiveFetcher(logs).fetch(str(bogus), workspace.root)


@pytest.mark.asyncio
async def test_missing_archive(workspace, logs, tmp_path):
    with pytest.raises(FetchError):
        await ArchiveFetcher(logs).fetch(str(tmp_path / "gone.zip"), workspace.root)


@pytest.mark.parametrize(
    "url",
    [
        "https://github.com/user/repo.git",
        "https://gitlab.example.com/group/sub/repo",
        "ssh://git@host/repo.git",
        "git@github.com:user/repo.git",
        "file:///srv/git/repo",
    ],
)
def test_valid_repo_urls(url):
    assert validate_repo_url(url)


@pytest.mark.parametrize(
    "url",
    ["", "--upload-pack=touch /tmp/x", "not a url", "ftp://host/repo", "https://host/repo; rm -rf /"],
)
def test_invalid_repo_urls(url):
    assert not validate_repo_url(url)


@pytest.mark.asyncio
async def test_repository_fetch_rejects_invalid_url(workspace, logs):
    with pytest.raises(FetchError):
        await RepositoryFetcher(logs).fetch("--upload-pack=evil", workspace.root)


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
async def test_repository_is_cloned(workspace, logs, tmp_path):
    repo = tmp_path / "origin"
    repo.mkdir()
    (repo / "main.py").write_text("print('from git')\n")
    git = ["git", "-c", "user.name=test", "-c", "user.email=test@example.com"]
    subprocess.run(git + ["init", "-q"], cwd=repo, check=True)
    subprocess.run(git + ["add", "main.py"], cwd=repo, check=True)
    subprocess.run(git + ["commit", "-q", "-m", "init"], cwd=repo, check=True)

    await RepositoryFetcher(logs, timeout=60).fetch(f"file://{repo}", workspace.root)

    assert (workspace.root / "main.py").read_text() == "print('from git')\n"
    assert any("Cloning" in e.text for e in logs.snapshot())


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
async def test_repository_clone_failure(workspace, logs, tmp_path):
    with pytest.raises(FetchError):
        await RepositoryFetcher(logs, timeout=60).fetch(f"file://{tmp_path}/missing", workspace.root)
