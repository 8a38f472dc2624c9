"""Single entry point for callers that embed the identity engine."""

import logging
from pathlib import Path
from typing import Iterable, Optional, Union

from .agent import AgentController
from .config import Config
from .detector import ConflictDetector
from .keys import KeyMaterialProbe, repair_permissions
from .models import AutoFixReport, Conflict, DetectionResult, Identity, ValidationReport
from .remote import RemoteProbe
from .runner import CommandRunner
from .ssh_config import ConfigSynthesizer
from .switcher import IdentitySwitcher, SwitchResult
from .validator import SSHValidator

logger = logging.getLogger(__name__)


class IdentityEngine:
    """Wires the components to one SSH directory and one command runner."""

    def __init__(
        self,
        ssh_dir: Optional[Path] = None,
        runner: Optional[CommandRunner] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or Config()
        self.ssh_dir = Path(ssh_dir) if ssh_dir else self.config.ssh_dir
        self.runner = runner or CommandRunner()

        self.keys = KeyMaterialProbe(self.runner)
        self.agent = AgentController(self.runner)
        self.remote = RemoteProbe(self.runner, connect_timeout=int(self.config.timeout("remote_probe")))
        self.synthesizer = ConfigSynthesizer(self.ssh_dir)
        self.switcher = IdentitySwitcher(self.synthesizer, self.agent, self.remote)
        self.detector = ConflictDetector(
            ssh_dir=self.ssh_dir,
            agent=self.agent,
            remote=self.remote,
            keys=self.keys,
            agent_timeout=self.config.timeout("agent_probe"),
        )

    def switch_identity(
        self,
        alias: str,
        key_path: Union[str, Path],
        domain: Optional[str] = None,
        test_connection: Optional[bool] = None,
        remember: bool = False,
    ) -> SwitchResult:
        """Switch to ``alias``; with ``remember``, store it in the settings file.

        A remembered username is the remote account the key must authenticate as.
        """
        domain = domain or self.config.get("switch", "default_domain", "github.com")
        if test_connection is None:
            test_connection = bool(self.config.get("switch", "test_connection", True))
        known = self.config.get_identity(alias)
        expected_user = known.username if known else ""

        result = self.switcher.switch(
            alias, key_path, domain, test_connection=test_connection, expected_user=expected_user
        )
        if remember:
            self.config.remember_identity(
                Identity(
                    alias=alias,
                    key_path=result.key_path,
                    domain=result.domain,
                    username=expected_user or result.remote_user,
                )
            )
            result.steps.append(f"Remembered identity '{alias}'")
        return result

    def diagnose(self, identities: Iterable[Identity]) -> DetectionResult:
        return self.detector.detect(identities)

    def auto_fix(self, conflicts: Iterable[Conflict]) -> AutoFixReport:
        return self.detector.auto_fix(conflicts)

    def validate_all(self, domain: Optional[str] = None) -> ValidationReport:
        validator = SSHValidator(
            ssh_dir=self.ssh_dir,
            domain=domain or self.config.get("switch", "default_domain", "github.com"),
            keys=self.keys,
            agent=self.agent,
            remote=self.remote,
            probe_timeout=self.config.timeout("validator_probe"),
        )
        return validator.validate()

    def repair_permissions(self, extra_keys: Iterable[Union[str, Path]] = ()) -> list[Path]:
        return repair_permissions(self.ssh_dir, extra_keys)

    def bindings(self, domain: Optional[str] = None) -> dict[str, str]:
        return self.synthesizer.bindings(domain)
