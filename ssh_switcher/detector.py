"""Heuristic detection and repair of cross-identity SSH conflicts.

Evidence is gathered once per run, then handed to independent ``check_*``
functions. Each check is pure: it reads the evidence and returns the
conflicts it sees, so a failure in one never hides the others.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import os
import stat
import tempfile
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

from .agent import AgentController
from .errors import SwitcherError
from .keys import KeyMaterialProbe, derive_public_key
from .models import (
    AgentSnapshot,
    AgentStatus,
    AutoFixReport,
    Conflict,
    ConflictType,
    DetectionResult,
    HealthVerdict,
    Identity,
    KeyMaterial,
    Severity,
)
from .remote import RemoteProbe, RemoteProbeResult, RemoteStatus
from .utils import file_mode, format_mode, get_ssh_directory

logger = logging.getLogger(__name__)

START_AGENT_HINT = 'eval "$(ssh-agent -s)"'

RECOMMENDATIONS = {
    ConflictType.MULTIPLE_KEYS: "Clear the agent and load only the active key: ssh-add -D && ssh-add <key>",
    ConflictType.WRONG_KEY: "Bind the right key to each identity: ssh-switcher switch <alias> <key>",
    ConflictType.PERMISSIONS: "Restrict key permissions: chmod 700 ~/.ssh && chmod 600 ~/.ssh/id_*",
    ConflictType.SOCKET_ISSUES: f"Start the SSH agent: {START_AGENT_HINT}",
    ConflictType.AGENT_DEAD: f"Restart the SSH agent: pkill ssh-agent; {START_AGENT_HINT}",
    ConflictType.KEY_MISMATCH: "Restore missing key files, or derive a public key: ssh-keygen -y -f <key> > <key>.pub",
    ConflictType.HOST_KEY_ISSUES: "Trust the platform host key: ssh-keyscan <domain> >> ~/.ssh/known_hosts",
}
COMPREHENSIVE_HINT = "Several problems found: run 'ssh-switcher doctor --fix' to repair what can be fixed automatically"


@dataclass
class Evidence:
    """Everything the checks look at, read once per detection run."""

    identities: list[Identity] = field(default_factory=list)
    ssh_dir: Optional[Path] = None
    ssh_dir_mode: Optional[int] = None
    keys: dict[str, KeyMaterial] = field(default_factory=dict)
    agent: Optional[AgentSnapshot] = None
    remote: list[tuple[Identity, RemoteProbeResult]] = field(default_factory=list)
    auth_sock: str = ""
    auth_sock_exists: bool = False
    stale_sockets: list[str] = field(default_factory=list)
    known_hosts: Optional[str] = None


def check_agent_multiplicity(evidence: Evidence) -> list[Conflict]:
    snapshot = evidence.agent
    if snapshot is None or len(snapshot.fingerprints) <= 1:
        return []
    return [
        Conflict(
            type=ConflictType.MULTIPLE_KEYS,
            severity=Severity.WARNING,
            description=f"ssh-agent holds {len(snapshot.fingerprints)} keys; the server may pick the wrong one",
            resolution="Clear the agent and load only the active identity's key",
            auto_fix=True,
            metadata={"fingerprints": snapshot.fingerprints},
        )
    ]


def check_remote_bindings(evidence: Evidence) -> list[Conflict]:
    conflicts = []
    for identity, result in evidence.remote:
        if result.authenticated:
            if identity.username and result.user and result.user.lower() != identity.username.lower():
                conflicts.append(
                    Conflict(
                        type=ConflictType.WRONG_KEY,
                        severity=Severity.CRITICAL,
                        description=(
                            f"Key for '{identity.alias}' authenticates as '{result.user}', "
                            f"expected '{identity.username}'"
                        ),
                        resolution=f"Point '{identity.alias}' at the key registered to '{identity.username}'",
                        affected_key=result.key_path,
                        metadata={"expected": identity.username, "actual": result.user, "domain": result.domain},
                    )
                )
        elif result.status == RemoteStatus.DENIED:
            conflicts.append(
                Conflict(
                    type=ConflictType.PERMISSIONS,
                    severity=Severity.ERROR,
                    description=f"{result.domain} denied the key for '{identity.alias}'",
                    resolution=f"Set the key to 600 and check it is registered on {result.domain}",
                    auto_fix=True,
                    affected_key=result.key_path,
                    metadata={"path": result.key_path, "expected_mode": 0o600},
                )
            )
    return conflicts


def check_permissions(evidence: Evidence) -> list[Conflict]:
    conflicts = []
    mode = evidence.ssh_dir_mode
    if evidence.ssh_dir is not None and mode is not None and mode & 0o077:
        conflicts.append(
            Conflict(
                type=ConflictType.PERMISSIONS,
                severity=Severity.WARNING,
                description=f"{evidence.ssh_dir} is {format_mode(mode)}, expected 700",
                resolution=f"chmod 700 {evidence.ssh_dir}",
                auto_fix=True,
                metadata={"path": str(evidence.ssh_dir), "current_mode": mode, "expected_mode": 0o700},
            )
        )
    for material in evidence.keys.values():
        if material.exists and material.is_exposed:
            conflicts.append(
                Conflict(
                    type=ConflictType.PERMISSIONS,
                    severity=Severity.ERROR,
                    description=f"{material.private_path} is {format_mode(material.mode)}, expected 600",
                    resolution=f"chmod 600 {material.private_path}",
                    auto_fix=True,
                    affected_key=material.private_path,
                    metadata={
                        "path": material.private_path,
                        "current_mode": material.mode,
                        "expected_mode": 0o600,
                    },
                )
            )
    return conflicts


def check_socket(evidence: Evidence) -> list[Conflict]:
    if not evidence.auth_sock:
        return [
            Conflict(
                type=ConflictType.SOCKET_ISSUES,
                severity=Severity.ERROR,
                description="SSH_AUTH_SOCK is not set; no agent is reachable",
                resolution=f"Start the SSH agent: {START_AGENT_HINT}",
                auto_fix=True,
            )
        ]

    conflicts = []
    if not evidence.auth_sock_exists:
        conflicts.append(
            Conflict(
                type=ConflictType.SOCKET_ISSUES,
                severity=Severity.ERROR,
                description=f"Agent socket does not exist: {evidence.auth_sock}",
                resolution=f"Restart the SSH agent: {START_AGENT_HINT}",
                auto_fix=True,
                metadata={"socket_path": evidence.auth_sock},
            )
        )
    for stale in evidence.stale_sockets:
        conflicts.append(
            Conflict(
                type=ConflictType.SOCKET_ISSUES,
                severity=Severity.WARNING,
                description=f"Stale SSH agent socket: {stale}",
                resolution=f"rm -rf {stale}",
                auto_fix=True,
                metadata={"stale_socket": stale},
            )
        )
    return conflicts


def check_agent_responsiveness(evidence: Evidence) -> list[Conflict]:
    snapshot = evidence.agent
    if snapshot is None or snapshot.responsive:
        return []
    if snapshot.status == AgentStatus.TIMEOUT:
        description = "ssh-agent did not respond in time"
    else:
        description = f"ssh-agent did not answer: {snapshot.output or snapshot.status.value}"
    return [
        Conflict(
            type=ConflictType.AGENT_DEAD,
            severity=Severity.ERROR,
            description=description,
            resolution=f"Restart the SSH agent: {START_AGENT_HINT}",
            auto_fix=True,
            metadata={"status": snapshot.status.value},
        )
    ]


def check_key_files(evidence: Evidence) -> list[Conflict]:
    conflicts = []
    for identity in evidence.identities:
        material = evidence.keys.get(identity.key_path)
        if material is None:
            continue
        if not material.exists:
            conflicts.append(
                Conflict(
                    type=ConflictType.KEY_MISMATCH,
                    severity=Severity.ERROR,
                    description=f"Private key for '{identity.alias}' not found: {material.private_path}",
                    resolution="Generate a new key or point the identity at an existing one",
                    affected_key=material.private_path,
                )
            )
        elif not material.public_exists:
            conflicts.append(
                Conflict(
                    type=ConflictType.KEY_MISMATCH,
                    severity=Severity.WARNING,
                    description=f"Public key missing: {material.public_path}",
                    resolution=f"ssh-keygen -y -f {material.private_path} > {material.public_path}",
                    auto_fix=True,
                    affected_key=material.private_path,
                )
            )
    return conflicts


def check_trust_store(evidence: Evidence) -> list[Conflict]:
    domains = sorted({identity.domain for identity in evidence.identities})
    if not domains:
        return []
    if evidence.known_hosts is None:
        return [
            Conflict(
                type=ConflictType.HOST_KEY_ISSUES,
                severity=Severity.INFO,
                description="known_hosts does not exist",
                resolution="ssh-keyscan <domain> >> ~/.ssh/known_hosts",
            )
        ]
    return [
        Conflict(
            type=ConflictType.HOST_KEY_ISSUES,
            severity=Severity.INFO,
            description=f"No known_hosts entry for {domain}",
            resolution=f"ssh-keyscan {domain} >> ~/.ssh/known_hosts",
            metadata={"domain": domain},
        )
        for domain in domains
        if not known_hosts_has(evidence.known_hosts, domain)
    ]


CHECKS: tuple[Callable[[Evidence], list[Conflict]], ...] = (
    check_agent_multiplicity,
    check_remote_bindings,
    check_permissions,
    check_socket,
    check_agent_responsiveness,
    check_key_files,
    check_trust_store,
)


def known_hosts_has(text: str, host: str) -> bool:
    """Whether a known_hosts file has an entry for ``host``, hashed or not."""
    host = host.lower()
    for line in text.splitlines():
        parts = line.split()
        if not parts or parts[0].startswith("#"):
            continue
        names = parts[1] if parts[0].startswith("@") and len(parts) > 1 else parts[0]
        for name in names.split(","):
            if name.startswith("|1|"):
                if _hashed_host_matches(name, host):
                    return True
            elif not name.startswith("!") and fnmatch(host, name.lower()):
                return True
    return False


def _hashed_host_matches(entry: str, host: str) -> bool:
    try:
        _, _, salt, digest = entry.split("|", 3)
        expected = base64.b64decode(digest)
        computed = hmac.new(base64.b64decode(salt), host.encode(), hashlib.sha1).digest()
    except (ValueError, binascii.Error):
        return False
    return hmac.compare_digest(expected, computed)


def assess_health(conflicts: list[Conflict]) -> HealthVerdict:
    if any(c.severity == Severity.CRITICAL for c in conflicts):
        return HealthVerdict.CRITICAL
    if sum(1 for c in conflicts if c.severity == Severity.ERROR) > 2:
        return HealthVerdict.POOR
    if len(conflicts) > 5:
        return HealthVerdict.FAIR
    if conflicts:
        return HealthVerdict.GOOD
    return HealthVerdict.EXCELLENT


def build_recommendations(conflicts: list[Conflict]) -> list[str]:
    present = {c.type for c in conflicts}
    recommendations = [RECOMMENDATIONS[t] for t in ConflictType if t in present]
    if len(conflicts) > 3:
        recommendations.append(COMPREHENSIVE_HINT)
    return recommendations


class ConflictDetector:
    """Collects evidence about the live SSH setup and classifies conflicts."""

    def __init__(
        self,
        ssh_dir: Optional[Path] = None,
        agent: Optional[AgentController] = None,
        remote: Optional[RemoteProbe] = None,
        keys: Optional[KeyMaterialProbe] = None,
        socket_dirs: Optional[Iterable[Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
        agent_timeout: float = 5,
        check_remote: bool = True,
    ):
        self.ssh_dir = Path(ssh_dir) if ssh_dir else get_ssh_directory()
        self.agent = agent or AgentController()
        self.remote = remote or RemoteProbe()
        self.keys = keys or KeyMaterialProbe()
        self.socket_dirs = (
            list(socket_dirs)
            if socket_dirs is not None
            else [self.ssh_dir / "socket", self.ssh_dir / "sockets", Path(tempfile.gettempdir())]
        )
        self.environ = environ
        self.agent_timeout = agent_timeout
        self.check_remote = check_remote

    def detect(self, identities: Iterable[Identity]) -> DetectionResult:
        evidence = self.gather(list(identities))
        conflicts: list[Conflict] = []
        for check in CHECKS:
            try:
                conflicts.extend(check(evidence))
            except Exception as e:
                logger.warning("Conflict check %s failed: %s", check.__name__, e)

        result = DetectionResult(
            conflicts=conflicts,
            recommendations=build_recommendations(conflicts),
            health=assess_health(conflicts),
        )
        logger.info("Detected %d conflicts, health %s", result.total_issues, result.health.value)
        return result

    def gather(self, identities: list[Identity]) -> Evidence:
        environ = self.environ if self.environ is not None else os.environ
        evidence = Evidence(identities=identities, ssh_dir=self.ssh_dir)
        evidence.ssh_dir_mode = file_mode(self.ssh_dir)
        evidence.auth_sock = environ.get("SSH_AUTH_SOCK", "")
        evidence.auth_sock_exists = bool(evidence.auth_sock) and os.path.exists(evidence.auth_sock)

        for identity in identities:
            if identity.key_path and identity.key_path not in evidence.keys:
                evidence.keys[identity.key_path] = self.keys.inspect(identity.key_path)

        evidence.agent = self.agent.probe(timeout=self.agent_timeout)

        if self.check_remote:
            for identity in identities:
                material = evidence.keys.get(identity.key_path)
                if material is None or not material.exists:
                    continue
                evidence.remote.append((identity, self.remote.check(identity.domain, identity.key_path)))

        if evidence.auth_sock:
            evidence.stale_sockets = self._find_stale_sockets(evidence.auth_sock)

        known_hosts = self.ssh_dir / "known_hosts"
        if known_hosts.is_file():
            try:
                evidence.known_hosts = known_hosts.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning("Could not read %s: %s", known_hosts, e)
        return evidence

    def _find_stale_sockets(self, auth_sock: str) -> list[str]:
        current = os.path.abspath(auth_sock)
        stale = []
        for directory in self.socket_dirs:
            try:
                entries = sorted(Path(directory).iterdir())
            except OSError:
                continue
            for entry in entries:
                path = os.path.abspath(entry)
                if not entry.name.startswith("ssh-") or path == current or current.startswith(path + os.sep):
                    continue
                if _is_socket_or_socket_dir(entry):
                    stale.append(str(entry))
        return stale

    def auto_fix(self, conflicts: Iterable[Conflict]) -> AutoFixReport:
        """Attempt every auto-fixable conflict independently; never raises."""
        report = AutoFixReport()
        agent_cleared = False
        for conflict in conflicts:
            if not conflict.auto_fix:
                report.skipped.append(conflict)
                continue
            try:
                if conflict.type == ConflictType.MULTIPLE_KEYS:
                    if not agent_cleared:
                        self.agent.clear_all().raise_for_status()
                        agent_cleared = True
                elif conflict.type == ConflictType.PERMISSIONS:
                    os.chmod(conflict.metadata["path"], conflict.metadata["expected_mode"])
                elif conflict.type == ConflictType.SOCKET_ISSUES:
                    _fix_socket(conflict)
                elif conflict.type == ConflictType.AGENT_DEAD:
                    _restart_agent()
                elif conflict.type == ConflictType.KEY_MISMATCH:
                    derive_public_key(conflict.affected_key)
                else:
                    report.skipped.append(conflict)
                    continue
            except (SwitcherError, OSError, KeyError) as e:
                logger.warning("Could not fix '%s': %s", conflict.description, e)
                report.failed.append((conflict, str(e)))
                continue
            logger.info("Fixed: %s", conflict.description)
            report.fixed.append(conflict)
        return report


def _is_socket_or_socket_dir(path: Path) -> bool:
    try:
        if stat.S_ISSOCK(path.lstat().st_mode):
            return True
        if path.is_dir() and not path.is_symlink():
            children = list(path.iterdir())
            return bool(children) and all(stat.S_ISSOCK(child.lstat().st_mode) for child in children)
    except OSError:
        return False
    return False


def _restart_agent() -> None:
    # The agent has to be started in the user's shell to export SSH_AUTH_SOCK there
    raise SwitcherError(f"Start the agent manually: {START_AGENT_HINT}")


def _fix_socket(conflict: Conflict) -> None:
    stale = conflict.metadata.get("stale_socket")
    if not stale:
        _restart_agent()
    path = Path(stale)
    if path.is_dir() and not path.is_symlink():
        for child in path.iterdir():
            child.unlink()
        path.rmdir()
    else:
        path.unlink(missing_ok=True)
