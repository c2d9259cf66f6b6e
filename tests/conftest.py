"""Shared test fixtures."""

import shutil
import tempfile

import pytest
from git import Repo

from build_agent.config import AgentConfig
from build_agent.services.events import EventChannel
from helpers import commit_file


@pytest.fixture
def tmp_project_dir():
    """Create a temporary project directory and clean up after test."""
    d = tempfile.mkdtemp(prefix="build-agent-test-")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def config(tmp_path):
    return AgentConfig(
        workspace_root=str(tmp_path / "workspaces"),
        install_command="echo installed",
        kill_grace_period=1.0,
    )


@pytest.fixture
def channel():
    return EventChannel()


@pytest.fixture
def origin_repo(tmp_path):
    """A local repository with a master and a develop branch to clone from."""
    path = tmp_path / "origin"
    repo = Repo.init(path, initial_branch="master")
    repo.config_writer().set_value("user", "name", "Test").release()
    repo.config_writer().set_value("user", "email", "test@local").release()
    commit_file(repo, "README.md", "# origin\n", "Initial commit")

    repo.git.checkout("-b", "develop")
    commit_file(repo, "develop.txt", "develop\n", "Develop work")
    repo.git.checkout("master")
    return str(path)
