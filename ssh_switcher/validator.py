"""End-to-end validation of the SSH setup against the hosting platform."""

import logging
from pathlib import Path
from typing import Iterable, Optional

from .agent import AgentController
from .errors import ConfigParseAnomalyError
from .keys import KeyMaterialProbe, extract_email
from .models import ConfigAnomaly, KeyReport, Severity, ValidationIssue, ValidationReport
from .remote import RemoteProbe, RemoteStatus
from .ssh_config import parse_config
from .utils import file_mode, format_mode, get_ssh_directory

logger = logging.getLogger(__name__)

KNOWN_KEY_TYPES = {"RSA", "DSA", "ECDSA", "ED25519", "ECDSA-SK", "ED25519-SK"}

ADVICE = {
    "ssh_directory": "Create ~/.ssh with owner-only access: mkdir -p ~/.ssh && chmod 700 ~/.ssh",
    "ssh_config": "Keep ~/.ssh/config owner-only and pin one key per host with IdentitiesOnly yes",
    "key": "Replace keys that cannot be read or classified: ssh-keygen -t ed25519",
    "remote": "Register each public key with exactly one account on the platform",
    "collision": "Use a distinct key per remote account and remove duplicates from the platform",
    "agent": "Keep a single key in the agent: ssh-add -D && ssh-add <key>",
}
BASELINE_ADVICE = (
    "Keep private keys at 600 and ~/.ssh at 700",
    "Prefer ED25519 keys for new identities",
    "Rotate SSH keys periodically and remove unused ones from the platform",
)


class SSHValidator:
    """Audits files, keys, the agent and the remote binding of each key."""

    def __init__(
        self,
        ssh_dir: Optional[Path] = None,
        domain: str = "github.com",
        key_paths: Optional[Iterable[str]] = None,
        keys: Optional[KeyMaterialProbe] = None,
        agent: Optional[AgentController] = None,
        remote: Optional[RemoteProbe] = None,
        probe_timeout: float = 30,
    ):
        self.ssh_dir = Path(ssh_dir) if ssh_dir else get_ssh_directory()
        self.config_file = self.ssh_dir / "config"
        self.domain = domain.lower()
        self.key_paths = list(key_paths) if key_paths is not None else None
        self.keys = keys or KeyMaterialProbe()
        self.agent = agent or AgentController()
        self.remote = remote or RemoteProbe()
        self.probe_timeout = probe_timeout

    def validate(self) -> ValidationReport:
        report = ValidationReport()
        self._audit_files(report)
        self._scan_config(report)
        for key_path in self._discover_keys():
            report.keys.append(self._analyze_key(key_path, report))
        self._detect_collisions(report)
        self._check_agent(report)
        report.recommendations = self._recommend(report)
        logger.info("Validation finished: %d issues, valid=%s", len(report.issues), report.is_valid)
        return report

    def _audit_files(self, report: ValidationReport) -> None:
        if not self.ssh_dir.is_dir():
            report.add_issue(
                ValidationIssue(
                    severity=Severity.CRITICAL,
                    category="ssh_directory",
                    description=f"SSH directory does not exist: {self.ssh_dir}",
                    solution="Create the directory with owner-only access",
                    code=f"mkdir -p {self.ssh_dir} && chmod 700 {self.ssh_dir}",
                )
            )
            return

        mode = file_mode(self.ssh_dir)
        if mode is not None and mode & 0o077:
            report.add_issue(
                ValidationIssue(
                    severity=Severity.WARNING,
                    category="ssh_directory",
                    description=f"SSH directory is {format_mode(mode)}, expected 700",
                    solution="Restrict the directory to its owner",
                    code=f"chmod 700 {self.ssh_dir}",
                )
            )

        if not self.config_file.is_file():
            report.add_issue(
                ValidationIssue(
                    severity=Severity.WARNING,
                    category="ssh_config",
                    description="SSH config file does not exist",
                    solution="Switch to an identity to generate one",
                    code="ssh-switcher switch <alias> <key>",
                )
            )
            return

        mode = file_mode(self.config_file)
        if mode is not None and mode & 0o077:
            report.add_issue(
                ValidationIssue(
                    severity=Severity.WARNING,
                    category="ssh_config",
                    description=f"SSH config is {format_mode(mode)}, expected 600",
                    solution="Restrict the config file to its owner",
                    code=f"chmod 600 {self.config_file}",
                )
            )

    def _scan_config(self, report: ValidationReport) -> None:
        if not self.config_file.is_file():
            return
        try:
            text = self.config_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s: %s", self.config_file, e)
            return

        try:
            blocks = parse_config(text)
        except ConfigParseAnomalyError as e:
            report.config_anomalies.append(
                ConfigAnomaly(line=e.line, description=str(e), severity=Severity.ERROR, fix="Give the Host line a pattern")
            )
            return

        default_block = None
        for block in blocks:
            if default_block is None and block.kind == "host" and self.domain in (p.lower() for p in block.patterns):
                default_block = block
            for line, keyword, value in block.directives():
                if keyword == "identitiesonly" and value.lower() != "yes":
                    report.config_anomalies.append(
                        ConfigAnomaly(
                            line=line,
                            description=f"IdentitiesOnly is '{value}'; every loaded key may be offered",
                            severity=Severity.WARNING,
                            fix="Set IdentitiesOnly yes",
                        )
                    )

        # Alias-only layouts (github-work, github-home) have no default block to pin
        identities_only = (default_block.get("IdentitiesOnly") or "") if default_block else "yes"
        if identities_only.lower() != "yes":
            if not identities_only:
                report.config_anomalies.append(
                    ConfigAnomaly(
                        line=default_block.host_line,
                        description=f"Host {self.domain} does not set IdentitiesOnly",
                        severity=Severity.CRITICAL,
                        fix=f"Add 'IdentitiesOnly yes' under Host {self.domain}",
                    )
                )
            report.add_issue(
                ValidationIssue(
                    severity=Severity.CRITICAL,
                    category="ssh_config",
                    description=f"{self.domain} does not pin a single key with IdentitiesOnly yes",
                    solution="Bind one key to the host and forbid fallback to other keys",
                    code=f"ssh-switcher switch <alias> <key> --domain {self.domain}",
                )
            )
        report.config_anomalies.sort(key=lambda anomaly: anomaly.line)

    def _discover_keys(self) -> list[str]:
        if self.key_paths is not None:
            return self.key_paths
        if not self.ssh_dir.is_dir():
            return []
        return [
            str(path)
            for path in sorted(self.ssh_dir.glob("id_*"))
            if path.is_file() and path.suffix != ".pub"
        ]

    def _analyze_key(self, key_path: str, report: ValidationReport) -> KeyReport:
        material = self.keys.inspect(key_path)
        key_report = KeyReport(material=material)
        if not material.exists:
            key_report.is_valid = False
            key_report.issues.append("private key not found")
            self._key_issue(report, key_path, "Private key not found", Severity.ERROR)
            return key_report

        parsed = self.keys.fingerprint(key_path)
        if parsed is None:
            key_report.is_valid = False
            key_report.issues.append("cannot be fingerprinted")
            self._key_issue(report, key_path, "Key cannot be fingerprinted", Severity.ERROR)
            return key_report

        material.fingerprint = parsed.fingerprint
        material.key_type = parsed.key_type or material.key_type
        material.email = extract_email(parsed.comment) or material.email
        if material.key_type not in KNOWN_KEY_TYPES:
            key_report.is_valid = False
            key_report.issues.append(f"unknown key type '{material.key_type}'")
            self._key_issue(report, key_path, f"Unknown key type '{material.key_type}'", Severity.ERROR)
            return key_report
        if material.key_type == "DSA":
            key_report.issues.append("DSA keys are deprecated")

        result = self.remote.check(self.domain, key_path, timeout=self.probe_timeout)
        if result.status == RemoteStatus.TIMEOUT:
            key_report.issues.append("authentication timeout")
        elif result.authenticated:
            key_report.remote_user = result.user
        else:
            key_report.issues.append(f"not accepted by {self.domain}")
            report.add_issue(
                ValidationIssue(
                    severity=Severity.WARNING,
                    category="remote",
                    description=f"{material.name} is not accepted by {self.domain}",
                    solution="Add the public key to the intended account",
                    code=f"cat {material.public_path}",
                )
            )
        return key_report

    def _key_issue(self, report: ValidationReport, key_path: str, description: str, severity: Severity) -> None:
        report.add_issue(
            ValidationIssue(
                severity=severity,
                category="key",
                description=f"{description}: {key_path}",
                solution="Regenerate the key or remove it",
                code="ssh-keygen -t ed25519 -C <email>",
            )
        )

    def _detect_collisions(self, report: ValidationReport) -> None:
        by_user: dict[str, list[KeyReport]] = {}
        for key_report in report.keys:
            if key_report.remote_user:
                by_user.setdefault(key_report.remote_user.lower(), []).append(key_report)

        for user, key_reports in by_user.items():
            if len(key_reports) < 2:
                continue
            names = ", ".join(k.material.name for k in key_reports)
            report.add_issue(
                ValidationIssue(
                    severity=Severity.WARNING,
                    category="collision",
                    description=f"Remote user '{user}' is reachable through {len(key_reports)} keys: {names}",
                    solution="Keep one key per remote account so the binding is unambiguous",
                    code=f"ssh-switcher show-config --domain {self.domain}",
                )
            )

    def _check_agent(self, report: ValidationReport) -> None:
        fingerprints = self.agent.loaded_fingerprints()
        if len(fingerprints) > 1:
            report.add_issue(
                ValidationIssue(
                    severity=Severity.CRITICAL,
                    category="agent",
                    description=f"ssh-agent holds {len(fingerprints)} keys",
                    solution="Clear the agent and load only the active identity's key",
                    code="ssh-add -D && ssh-add <key>",
                )
            )

    def _recommend(self, report: ValidationReport) -> list[str]:
        categories = []
        for issue in report.issues:
            if issue.category not in categories:
                categories.append(issue.category)
        if report.config_anomalies and "ssh_config" not in categories:
            categories.append("ssh_config")
        recommendations = [ADVICE[category] for category in categories if category in ADVICE]
        recommendations.extend(BASELINE_ADVICE)
        return recommendations
