"""Integration test fixtures for shadow sync.

These fixtures create real git repositories and stand in for a container
with a plain host directory, so the real git and file-transfer code runs
end to end.
"""

import shutil
from pathlib import Path
from typing import Generator

import pytest

from tests.integration.helpers import DirectoryRuntime, run_git


@pytest.fixture
def git_repo(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a real git repository for testing.

    Initializes a git repo on `main` with an initial commit.
    """
    repo_path = tmp_path / "test_repo"
    repo_path.mkdir()

    run_git(["init", "--initial-branch=main"], repo_path)
    run_git(["config", "user.email", "test@example.com"], repo_path)
    run_git(["config", "user.name", "Test User"], repo_path)

    (repo_path / "README.md").write_text("# Test Project\n")
    (repo_path / ".gitignore").write_text("*.log\n")
    run_git(["add", "."], repo_path)
    run_git(["commit", "-m", "Initial commit"], repo_path)

    yield repo_path


@pytest.fixture
def runtime() -> DirectoryRuntime:
    return DirectoryRuntime()


@pytest.fixture
def make_workspace(tmp_path: Path, git_repo: Path, runtime: DirectoryRuntime):
    """Create a container workspace that starts as a copy of the repo's files."""

    def factory(container_id: str) -> Path:
        workspace = tmp_path / "containers" / container_id
        shutil.copytree(git_repo, workspace, ignore=shutil.ignore_patterns(".git"))
        runtime.add_container(container_id, workspace)
        return workspace

    return factory
