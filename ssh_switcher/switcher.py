"""Switching the active SSH identity."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from .agent import AgentController
from .errors import SwitcherError
from .remote import RemoteProbe
from .ssh_config import ApplyResult, ConfigSynthesizer

logger = logging.getLogger(__name__)


@dataclass
class SwitchResult:
    alias: str
    key_path: str
    domain: str
    config: Optional[ApplyResult] = None
    agent_cleared: bool = False
    key_loaded: bool = False
    connection_tested: bool = False
    remote_user: str = ""
    steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.config is not None


class IdentitySwitcher:
    """Binds the config file, then the agent, to one identity.

    The config rewrite is the only step that can abort a switch. Agent and
    connectivity problems are reported as warnings on the result.
    """

    def __init__(
        self,
        synthesizer: Optional[ConfigSynthesizer] = None,
        agent: Optional[AgentController] = None,
        remote: Optional[RemoteProbe] = None,
    ):
        self.synthesizer = synthesizer or ConfigSynthesizer()
        self.agent = agent or AgentController()
        self.remote = remote or RemoteProbe()

    def switch(
        self,
        alias: str,
        key_path: Union[str, Path],
        domain: str = "github.com",
        test_connection: bool = True,
        expected_user: str = "",
    ) -> SwitchResult:
        key_path = str(Path(key_path).expanduser())
        result = SwitchResult(alias=alias, key_path=key_path, domain=domain)

        result.config = self.synthesizer.apply(alias, key_path, domain)
        if result.config.backup_path:
            result.steps.append(f"Backed up existing config to {result.config.backup_path}")
        result.steps.append(
            f"Bound {key_path} to {domain}" if result.config.changed else f"{domain} already bound to {key_path}"
        )

        cleared = self.agent.clear_all()
        if cleared.success:
            result.agent_cleared = True
            result.steps.append("Cleared ssh-agent")
        else:
            result.warnings.append(f"Could not clear ssh-agent: {cleared.message}")

        loaded = self.agent.load_only(key_path)
        if loaded.success:
            result.key_loaded = True
            result.steps.append(f"Loaded {key_path} into ssh-agent")
        else:
            result.warnings.append(f"Could not load key into ssh-agent: {loaded.message}")

        if test_connection:
            probe = self.remote.check(domain, key_path)
            result.remote_user = probe.user
            try:
                probe.raise_for_status(expected_user)
            except SwitcherError as e:
                result.warnings.append(f"Connection test to {domain} failed: {e}")
            else:
                result.connection_tested = True
                result.steps.append(f"Authenticated to {domain}" + (f" as {probe.user}" if probe.user else ""))

        for warning in result.warnings:
            logger.warning(warning)
        logger.info("Switched to '%s' (%d warnings)", alias, len(result.warnings))
        return result
