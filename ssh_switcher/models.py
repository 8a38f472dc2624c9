"""Data model shared by the switcher, the conflict detector and the validator."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

PLATFORM_DOMAINS = {
    "github": "github.com",
    "gitlab": "gitlab.com",
    "bitbucket": "bitbucket.org",
}


class Severity(str, Enum):
    """How serious a conflict or validation issue is."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ConflictType(str, Enum):
    """Kinds of cross-identity problems the detector can report.

    Declaration order is the order recommendations are emitted in.
    """

    MULTIPLE_KEYS = "multiple_keys"
    WRONG_KEY = "wrong_key"
    PERMISSIONS = "permissions"
    SOCKET_ISSUES = "socket_issues"
    AGENT_DEAD = "agent_dead"
    KEY_MISMATCH = "key_mismatch"
    HOST_KEY_ISSUES = "host_key_issues"


class HealthVerdict(str, Enum):
    """Five-level summary of a detection run."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"


def default_domain(platform: str) -> Optional[str]:
    """Return the default SSH host for a platform, or None for custom ones."""
    return PLATFORM_DOMAINS.get(platform.lower()) if platform else None


def platform_prefix(domain: str) -> str:
    """Return the host-alias prefix for a domain (``github.com`` -> ``github``)."""
    return domain.split(".", 1)[0].lower()


@dataclass
class Identity:
    """A Git/SSH persona as seen by the engine.

    Only ``alias``, ``domain``, ``key_path`` and ``username`` are consulted;
    the other fields are carried for display.
    """

    alias: str
    key_path: str = ""
    domain: str = ""
    platform: str = "github"
    username: str = ""
    name: str = ""
    email: str = ""

    def __post_init__(self):
        if not self.domain:
            self.domain = default_domain(self.platform) or "github.com"


@dataclass
class KeyMaterial:
    """Facts about one private/public key pair on disk."""

    private_path: str
    public_path: str = ""
    exists: bool = False
    public_exists: bool = False
    mode: Optional[int] = None
    key_type: str = ""
    fingerprint: str = ""
    comment: str = ""
    email: str = ""

    def __post_init__(self):
        if not self.public_path:
            self.public_path = self.private_path + ".pub"

    @property
    def name(self) -> str:
        return self.private_path.replace("\\", "/").rsplit("/", 1)[-1]

    @property
    def is_exposed(self) -> bool:
        """True when group or other permission bits are set."""
        return self.mode is not None and bool(self.mode & 0o077)


@dataclass
class LoadedKey:
    """One line of ``ssh-add -l`` output."""

    bits: int
    fingerprint: str
    comment: str = ""
    key_type: str = ""


class AgentStatus(str, Enum):
    OK = "ok"
    EMPTY = "empty"
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"
    FAILED = "failed"
    UNRECOGNIZED = "unrecognized"


@dataclass
class AgentSnapshot:
    """The agent's loaded keys at the moment it was asked."""

    status: AgentStatus
    keys: list[LoadedKey] = field(default_factory=list)
    output: str = ""

    @property
    def fingerprints(self) -> list[str]:
        seen = []
        for key in self.keys:
            if key.fingerprint not in seen:
                seen.append(key.fingerprint)
        return seen

    @property
    def responsive(self) -> bool:
        return self.status in (AgentStatus.OK, AgentStatus.EMPTY, AgentStatus.UNRECOGNIZED)


@dataclass
class Conflict:
    """A detected cross-identity SSH problem."""

    type: ConflictType
    severity: Severity
    description: str
    resolution: str
    auto_fix: bool = False
    affected_key: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DetectionResult:
    conflicts: list[Conflict] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    health: HealthVerdict = HealthVerdict.EXCELLENT

    @property
    def total_issues(self) -> int:
        return len(self.conflicts)

    def by_type(self, conflict_type: ConflictType) -> list[Conflict]:
        return [c for c in self.conflicts if c.type == conflict_type]


@dataclass
class AutoFixReport:
    """Outcome of an auto-fix pass; nothing in it was raised."""

    fixed: list[Conflict] = field(default_factory=list)
    failed: list[tuple[Conflict, str]] = field(default_factory=list)
    skipped: list[Conflict] = field(default_factory=list)


@dataclass
class ValidationIssue:
    severity: Severity
    category: str
    description: str
    solution: str
    code: str = ""


@dataclass
class ConfigAnomaly:
    """A problem anchored to a 1-based line of the SSH config file."""

    line: int
    description: str
    severity: Severity
    fix: str


@dataclass
class KeyReport:
    material: KeyMaterial
    is_valid: bool = True
    remote_user: str = ""
    issues: list[str] = field(default_factory=list)


@dataclass
class ValidationReport:
    is_valid: bool = True
    issues: list[ValidationIssue] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    keys: list[KeyReport] = field(default_factory=list)
    config_anomalies: list[ConfigAnomaly] = field(default_factory=list)

    def add_issue(self, issue: ValidationIssue) -> None:
        self.issues.append(issue)
        if issue.severity in (Severity.CRITICAL, Severity.ERROR):
            self.is_valid = False
