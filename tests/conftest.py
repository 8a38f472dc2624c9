"""Shared fixtures: temporary SSH directories and a scripted command runner."""

import shutil
import tempfile
from pathlib import Path

import pytest

from helpers import FakeAgent, FakeRunner


@pytest.fixture
def temp_dir():
    """Create temporary directory."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir)


@pytest.fixture
def ssh_dir(temp_dir):
    """Create a .ssh directory with owner-only permissions."""
    ssh_dir = temp_dir / ".ssh"
    ssh_dir.mkdir(mode=0o700)
    ssh_dir.chmod(0o700)
    return ssh_dir


@pytest.fixture
def runner():
    """Scripted command runner."""
    return FakeRunner()


@pytest.fixture
def agent_state(runner):
    """Empty fake ssh-agent wired into the runner."""
    return FakeAgent(runner)


@pytest.fixture
def agent_socket(temp_dir):
    """A file standing in for a live agent socket."""
    socket_path = temp_dir / "agent.sock"
    socket_path.write_text("")
    return socket_path
