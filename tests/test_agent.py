"""Tests for ssh-agent reconciliation."""

import pytest

from helpers import FakeAgent
from ssh_switcher.agent import AgentController, AgentOutcome
from ssh_switcher.errors import AgentUnreachableError, AgentUnresponsiveError, SocketStaleError
from ssh_switcher.models import AgentStatus

THREE_KEYS = [
    "256 SHA256:aaa alice@example.com (ED25519)",
    "256 SHA256:bbb bob@example.com (ED25519)",
    "3072 SHA256:ccc old-laptop (RSA)",
]


class TestListLoaded:
    """Test reading the agent's loaded keys."""

    def test_list_loaded_keys(self, runner):
        """Test loaded keys are parsed."""
        FakeAgent(runner, THREE_KEYS)

        snapshot = AgentController(runner).list_loaded()

        assert snapshot.status == AgentStatus.OK
        assert snapshot.fingerprints == ["SHA256:aaa", "SHA256:bbb", "SHA256:ccc"]
        assert snapshot.keys[2].key_type == "RSA"
        assert snapshot.responsive

    def test_list_loaded_empty(self, runner, agent_state):
        """Test the no-identities marker is an empty, successful result."""
        snapshot = AgentController(runner).list_loaded()

        assert snapshot.status == AgentStatus.EMPTY
        assert snapshot.keys == []
        assert snapshot.responsive

    def test_list_loaded_unreachable(self, runner):
        """Test a missing agent is reported as unreachable."""
        runner.on(
            "ssh-add",
            returncode=2,
            stderr="Could not open a connection to your authentication agent.\n",
        )

        snapshot = AgentController(runner).list_loaded()

        assert snapshot.status == AgentStatus.UNREACHABLE
        assert not snapshot.responsive

    def test_list_loaded_missing_binary(self, runner):
        """Test a missing ssh-add binary is reported as unreachable."""
        assert AgentController(runner).list_loaded().status == AgentStatus.UNREACHABLE

    def test_list_loaded_unrecognized_output(self, runner):
        """Test unrecognized output is not fatal."""
        runner.on("ssh-add", "-l", returncode=0, stdout="something new\n")

        snapshot = AgentController(runner).list_loaded()

        assert snapshot.status == AgentStatus.UNRECOGNIZED
        assert snapshot.responsive

    def test_duplicate_fingerprints_counted_once(self, runner):
        """Test the same key loaded twice is one fingerprint."""
        FakeAgent(runner, THREE_KEYS[:1] * 2)

        assert AgentController(runner).loaded_fingerprints() == ["SHA256:aaa"]


class TestProbe:
    """Test the bounded responsiveness probe."""

    def test_probe_timeout(self, runner):
        """Test a hung agent yields TIMEOUT."""
        runner.on("ssh-add", "-l", timed_out=True)

        snapshot = AgentController(runner).probe(timeout=5)

        assert snapshot.status == AgentStatus.TIMEOUT
        assert not snapshot.responsive

    def test_probe_passes_timeout(self, runner, agent_state):
        """Test the probe timeout reaches the runner."""
        seen = []
        original_run = runner.run

        def spy(args, timeout=None, input=None, env=None):
            seen.append(timeout)
            return original_run(args, timeout=timeout, input=input, env=env)

        runner.run = spy
        AgentController(runner).probe(timeout=5)

        assert seen == [5]


class TestClearAndLoad:
    """Test mutating the agent."""

    def test_clear_all(self, runner):
        """Test clearing removes every key."""
        agent = FakeAgent(runner, THREE_KEYS)

        outcome = AgentController(runner).clear_all()

        assert outcome.success
        assert agent.keys == []

    def test_clear_all_already_empty(self, runner):
        """Test the no-identities marker on failure output counts as success."""
        runner.on("ssh-add", "-D", returncode=1, stderr="The agent has no identities.\n")

        outcome = AgentController(runner).clear_all()

        assert outcome.success
        assert outcome.status == AgentStatus.EMPTY

    def test_load_only(self, runner, agent_state):
        """Test exactly one key is added, non-interactively."""
        outcome = AgentController(runner).load_only("/keys/work")

        assert outcome.success
        assert runner.calls[-1] == ["ssh-add", "/keys/work"]
        assert len(agent_state.keys) == 1

    def test_load_only_failure_is_reported(self, runner):
        """Test a failed load is reported, not raised."""
        runner.on("ssh-add", returncode=1, stderr="Enter passphrase for /keys/locked: \n")

        outcome = AgentController(runner).load_only("/keys/locked")

        assert not outcome.success
        assert outcome.status == AgentStatus.FAILED
        assert "passphrase" in outcome.message


class TestAgentOutcome:
    """Test mapping failed outcomes onto errors."""

    def test_success_does_not_raise(self):
        """Test a successful outcome is silent."""
        AgentOutcome("clear", True, AgentStatus.OK).raise_for_status()

    def test_timeout_raises_unresponsive(self):
        """Test a timeout maps to AgentUnresponsiveError."""
        with pytest.raises(AgentUnresponsiveError):
            AgentOutcome("clear", False, AgentStatus.TIMEOUT).raise_for_status()

    def test_stale_socket(self, monkeypatch, temp_dir):
        """Test an unreachable agent with a vanished socket maps to SocketStaleError."""
        monkeypatch.setenv("SSH_AUTH_SOCK", str(temp_dir / "gone.sock"))

        with pytest.raises(SocketStaleError, match="gone.sock"):
            AgentOutcome("clear", False, AgentStatus.UNREACHABLE).raise_for_status()

    def test_unreachable(self, monkeypatch):
        """Test an unreachable agent without a socket maps to AgentUnreachableError."""
        monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)

        with pytest.raises(AgentUnreachableError):
            AgentOutcome("load", False, AgentStatus.UNREACHABLE, "no agent").raise_for_status()
