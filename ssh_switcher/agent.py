"""Reconciliation of the running ssh-agent with the active identity."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .errors import AgentUnreachableError, AgentUnresponsiveError, SocketStaleError
from .keys import parse_fingerprint_line
from .models import AgentSnapshot, AgentStatus
from .runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

NO_IDENTITIES_MARKER = "The agent has no identities"
UNREACHABLE_MARKERS = (
    "Could not open a connection to your authentication agent",
    "Error connecting to agent",
    "Connection refused",
)


@dataclass
class AgentOutcome:
    """Result of a mutating agent command (``ssh-add -D`` / ``ssh-add <key>``)."""

    action: str
    success: bool
    status: AgentStatus
    message: str = ""

    def raise_for_status(self) -> None:
        """Raise the matching agent error when the command failed."""
        if self.success:
            return
        if self.status == AgentStatus.TIMEOUT:
            raise AgentUnresponsiveError(f"ssh-agent did not answer to {self.action}")
        if self.status == AgentStatus.UNREACHABLE:
            socket = os.environ.get("SSH_AUTH_SOCK")
            if socket and not Path(socket).exists():
                raise SocketStaleError(f"Agent socket does not exist: {socket}")
            raise AgentUnreachableError(self.message or "Could not connect to ssh-agent")
        raise AgentUnreachableError(f"{self.action} failed: {self.message}")


class AgentController:
    """Drives ``ssh-add`` against whatever agent SSH_AUTH_SOCK points at.

    The loaded-key set is read live on every call and never cached.
    """

    def __init__(self, runner: Optional[CommandRunner] = None, timeout: float = 10):
        self.runner = runner or CommandRunner()
        self.timeout = timeout

    def list_loaded(self, timeout: Optional[float] = None) -> AgentSnapshot:
        result = self.runner.run(["ssh-add", "-l"], timeout=timeout or self.timeout)
        return self._snapshot(result)

    def probe(self, timeout: float = 5) -> AgentSnapshot:
        """list_loaded bounded by a short timeout; a hung agent yields TIMEOUT."""
        snapshot = self.list_loaded(timeout=timeout)
        if snapshot.status == AgentStatus.TIMEOUT:
            logger.warning("ssh-agent did not respond within %ss", timeout)
        return snapshot

    def loaded_fingerprints(self) -> list[str]:
        return self.list_loaded().fingerprints

    def clear_all(self) -> AgentOutcome:
        result = self.runner.run(["ssh-add", "-D"], timeout=self.timeout)
        outcome = self._outcome("clear", result)
        if outcome.success:
            logger.info("Removed all identities from ssh-agent")
        else:
            logger.warning("Could not clear ssh-agent: %s", outcome.message)
        return outcome

    def load_only(self, key_path: Union[str, Path]) -> AgentOutcome:
        """Add exactly one key, without prompting for a passphrase."""
        env = dict(os.environ)
        # Force ssh-add to fail instead of waiting on an askpass dialog
        env["SSH_ASKPASS_REQUIRE"] = "never"
        env.pop("DISPLAY", None)
        result = self.runner.run(
            ["ssh-add", str(key_path)],
            timeout=self.timeout,
            input="",
            env=env,
        )
        outcome = self._outcome("load", result)
        if outcome.success:
            logger.info("Loaded %s into ssh-agent", key_path)
        else:
            logger.warning("Could not load %s into ssh-agent: %s", key_path, outcome.message)
        return outcome

    def _snapshot(self, result: CommandResult) -> AgentSnapshot:
        output = result.output
        if result.timed_out:
            return AgentSnapshot(status=AgentStatus.TIMEOUT, output=output)
        if not result.started:
            return AgentSnapshot(status=AgentStatus.UNREACHABLE, output=result.error)
        if NO_IDENTITIES_MARKER in output:
            return AgentSnapshot(status=AgentStatus.EMPTY, output=output)
        if _unreachable(output) or result.returncode == 2:
            return AgentSnapshot(status=AgentStatus.UNREACHABLE, output=output)

        keys = [key for key in map(parse_fingerprint_line, result.stdout.splitlines()) if key]
        if keys:
            return AgentSnapshot(status=AgentStatus.OK, keys=keys, output=output)
        if result.ok:
            logger.debug("Unrecognized ssh-add -l output: %r", output)
            return AgentSnapshot(status=AgentStatus.UNRECOGNIZED, output=output)
        return AgentSnapshot(status=AgentStatus.FAILED, output=output)

    def _outcome(self, action: str, result: CommandResult) -> AgentOutcome:
        output = result.output
        if result.timed_out:
            return AgentOutcome(action, False, AgentStatus.TIMEOUT, "timed out")
        if not result.started:
            return AgentOutcome(action, False, AgentStatus.UNREACHABLE, result.error)
        if result.ok:
            return AgentOutcome(action, True, AgentStatus.OK, output)
        if action == "clear" and NO_IDENTITIES_MARKER in output:
            return AgentOutcome(action, True, AgentStatus.EMPTY, output)
        if _unreachable(output) or result.returncode == 2:
            return AgentOutcome(action, False, AgentStatus.UNREACHABLE, output)
        return AgentOutcome(action, False, AgentStatus.FAILED, output or f"exit status {result.returncode}")


def _unreachable(output: str) -> bool:
    return any(marker in output for marker in UNREACHABLE_MARKERS)
