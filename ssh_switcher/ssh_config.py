"""Parsing and synthesis of the SSH client configuration file.

The file is split into blocks. Blocks that bind the target domain, follow
the ``{prefix}-*`` alias convention or carry the ``# ssh-switcher`` tag are
*owned* and are regenerated on every switch. Everything else is *foreign*
and is written back byte for byte, in its original order.
"""

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from fnmatch import fnmatch
from pathlib import Path
from typing import Mapping, Optional, Union

from .errors import ConfigParseAnomalyError, DirectoryUnwritableError, KeyNotFoundError
from .models import platform_prefix
from .utils import ensure_directory, file_mode, get_ssh_directory, safe_remove_file

logger = logging.getLogger(__name__)

TAG_PREFIX = "# ssh-switcher"
HEADER_LINES = (
    "# ssh-switcher managed configuration",
    "# ssh-switcher: blocks tagged below are regenerated on every switch; other blocks are kept as written",
)
DEFAULTS_TAG = f"{TAG_PREFIX}: defaults"
BACKUP_PREFIX = "config.ssh-switcher-backup-"
CONFIG_MODE = 0o600

IDENTITY_TAG = re.compile(r"^#\s*ssh-switcher:\s*identity\s+(\S+)")
DIRECTIVE = re.compile(r"^([A-Za-z][A-Za-z0-9]*)\s*(?:=\s*)?(.*?)\s*$")

STRICT_DIRECTIVES = (
    ("IdentitiesOnly", "yes"),
    ("PreferredAuthentications", "publickey"),
    ("AddKeysToAgent", "no"),
    ("StrictHostKeyChecking", "yes"),
    ("ConnectTimeout", "10"),
    ("ServerAliveInterval", "60"),
    ("ServerAliveCountMax", "3"),
)
GLOBAL_DEFAULTS = (
    ("ServerAliveInterval", "60"),
    ("ServerAliveCountMax", "3"),
    ("TCPKeepAlive", "yes"),
)


def split_directive(line: str) -> Optional[tuple[str, str]]:
    """Split ``Keyword value`` or ``Keyword=value`` into (lowercased keyword, value)."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    match = DIRECTIVE.match(stripped)
    if not match:
        return None
    return match.group(1).lower(), match.group(2)


def unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def quote_path(path: str) -> str:
    return f'"{path}"' if any(c.isspace() for c in path) else path


@dataclass
class HostBlock:
    """One ``Host``/``Match`` section, or the preamble before the first one.

    ``lines`` holds the raw text, including the comment lines directly above
    the ``Host`` line. ``start_line`` is the 1-based number of ``lines[0]``.
    """

    kind: str
    patterns: list[str] = field(default_factory=list)
    lines: list[str] = field(default_factory=list)
    start_line: int = 1
    owned: bool = False
    trailing_blanks: int = 0

    @property
    def tagged(self) -> bool:
        return self.kind != "preamble" and any(line.startswith(TAG_PREFIX) for line in self.lines)

    @property
    def identity_alias(self) -> Optional[str]:
        for line in self.lines:
            match = IDENTITY_TAG.match(line.strip())
            if match:
                return match.group(1)
        return None

    @property
    def host_line(self) -> int:
        """1-based number of the Host/Match line itself."""
        for offset, line in enumerate(self.lines):
            parsed = split_directive(line)
            if parsed and parsed[0] in ("host", "match"):
                return self.start_line + offset
        return self.start_line

    def directives(self) -> list[tuple[int, str, str]]:
        """(line number, lowercased keyword, value) for every directive in the block."""
        found = []
        for offset, line in enumerate(self.lines):
            parsed = split_directive(line)
            if parsed and parsed[0] not in ("host", "match"):
                found.append((self.start_line + offset, parsed[0], parsed[1]))
        return found

    def get(self, keyword: str) -> Optional[str]:
        keyword = keyword.lower()
        for _, key, value in self.directives():
            if key == keyword:
                return value
        return None


def parse_config(text: str) -> list[HostBlock]:
    """Split config text into blocks.

    Raises ConfigParseAnomalyError for a ``Host`` line without patterns.
    """
    blocks: list[HostBlock] = []
    current = HostBlock(kind="preamble", start_line=1)

    for number, line in enumerate(text.splitlines(), start=1):
        parsed = None if line[:1].isspace() else split_directive(line)
        if not parsed or parsed[0] not in ("host", "match"):
            current.lines.append(line)
            continue

        keyword, value = parsed
        patterns = [unquote(p) for p in value.split()] if keyword == "host" else []
        if keyword == "host" and not patterns:
            raise ConfigParseAnomalyError(f"line {number}: Host without patterns", line=number)

        leading = _take_leading_comments(current.lines)
        _close_block(current, blocks)
        current = HostBlock(
            kind=keyword,
            patterns=patterns,
            lines=leading + [line],
            start_line=number - len(leading),
        )

    _close_block(current, blocks)
    return blocks


def _take_leading_comments(lines: list[str]) -> list[str]:
    count = 0
    for line in reversed(lines):
        if not line.startswith("#"):
            break
        count += 1
    if not count:
        return []
    taken = lines[-count:]
    del lines[-count:]
    return taken


def _close_block(block: HostBlock, blocks: list[HostBlock]) -> None:
    while block.lines and not block.lines[-1].strip():
        block.lines.pop()
        block.trailing_blanks += 1
    if block.kind != "preamble" or any(line.strip() for line in block.lines):
        blocks.append(block)


def is_owned(block: HostBlock, domain: str) -> bool:
    """Whether a block belongs to the tool for ``domain``."""
    if block.kind == "preamble":
        return False
    if block.tagged:
        return True
    if block.kind != "host":
        return False

    domain = domain.lower()
    prefix = platform_prefix(domain)
    for pattern in block.patterns:
        pattern = pattern.lower()
        if pattern.startswith("!"):
            continue
        if pattern == domain or fnmatch(pattern, f"*.{domain}") or fnmatch(pattern, f"{prefix}-*"):
            return True
    return False


def is_managed(text: str) -> bool:
    """Whether the file already carries the ownership header."""
    return any(line.strip() == HEADER_LINES[0] for line in text.splitlines())


def render_host_block(patterns: str, key_path: str, domain: str, tag: str) -> list[str]:
    lines = [tag, f"Host {patterns}"]
    lines.append(f"    HostName {domain}")
    lines.append("    User git")
    lines.append(f"    IdentityFile {quote_path(key_path)}")
    lines.extend(f"    {keyword} {value}" for keyword, value in STRICT_DIRECTIVES)
    return lines


def render_defaults_block() -> list[str]:
    lines = [DEFAULTS_TAG, "Host *"]
    lines.extend(f"    {keyword} {value}" for keyword, value in GLOBAL_DEFAULTS)
    return lines


def _render_foreign(block: HostBlock) -> list[str]:
    if block.kind != "preamble":
        # _join supplies one separating blank line; keep any extra ones
        return list(block.lines) + [""] * max(block.trailing_blanks - 1, 0)
    lines = [line for line in block.lines if not line.startswith(TAG_PREFIX)]
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return lines


def _user_comments(block: HostBlock) -> list[str]:
    """Comment lines of an owned block that the tool did not write."""
    return [
        line
        for line in block.lines
        if line.lstrip().startswith("#") and not line.lstrip().startswith(TAG_PREFIX)
    ]


def _join(sections: list[list[str]]) -> str:
    return "\n\n".join("\n".join(section) for section in sections if section) + "\n"


def synthesize(alias: str, key_path: str, domain: str, existing_text: str = "") -> str:
    """Return the full config text binding ``key_path`` to ``domain``.

    Pure. The preamble stays directly under the header so its top-level
    directives are not captured by a ``Host`` block. Comments the user
    wrote inside a replaced block are kept at that block's position.
    """
    domain = domain.lower()
    prefix = platform_prefix(domain)
    blocks = parse_config(existing_text) if existing_text else []

    preamble: list[list[str]] = []
    preserved: list[list[str]] = []
    for block in blocks:
        if block.kind == "preamble":
            preamble.append(_render_foreign(block))
        elif is_owned(block, domain):
            block.owned = True
            preserved.append(_user_comments(block))
        else:
            preserved.append(_render_foreign(block))

    sections = [list(HEADER_LINES)]
    sections.extend(preamble)
    sections.append(render_host_block(domain, key_path, domain, f"{TAG_PREFIX}: identity {alias}"))
    sections.append(
        render_host_block(f"{prefix}-* *.{domain}", key_path, domain, f"{TAG_PREFIX}: identity {alias} wildcard")
    )
    sections.extend(preserved)
    sections.append(render_defaults_block())
    return _join(sections)


def generate_config(identities: Mapping[str, str], domain: str = "github.com") -> str:
    """Render one ``{prefix}-{alias}`` block per identity plus the defaults block."""
    domain = domain.lower()
    prefix = platform_prefix(domain)
    sections = [list(HEADER_LINES)]
    for alias, key_path in identities.items():
        sections.append(render_host_block(f"{prefix}-{alias}", key_path, domain, f"{TAG_PREFIX}: identity {alias}"))
    sections.append(render_defaults_block())
    return _join(sections)


def read_bindings(text: str, domain: Optional[str] = None) -> dict[str, str]:
    """Map each tagged identity alias to the key its block binds.

    With ``domain``, only blocks whose HostName is that domain are read.
    """
    bindings: dict[str, str] = {}
    for block in parse_config(text):
        if domain and (block.get("HostName") or "").lower() != domain.lower():
            continue
        alias = block.identity_alias
        identity_file = block.get("IdentityFile")
        if alias and identity_file and alias not in bindings:
            bindings[alias] = unquote(identity_file)
    return bindings


@dataclass
class ApplyResult:
    config_path: Path
    changed: bool
    backup_path: Optional[Path] = None


class ConfigSynthesizer:
    """Rewrites ``~/.ssh/config`` so exactly one key is bound to a host."""

    def __init__(self, ssh_dir: Optional[Path] = None):
        self.ssh_dir = Path(ssh_dir) if ssh_dir else get_ssh_directory()
        self.config_file = self.ssh_dir / "config"

    def read(self) -> str:
        """Current config text; unreadable or missing files read as empty."""
        if not self.config_file.exists():
            return ""
        try:
            return self.config_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s, treating it as empty: %s", self.config_file, e)
            return ""

    def bindings(self, domain: Optional[str] = None) -> dict[str, str]:
        try:
            return read_bindings(self.read(), domain)
        except ConfigParseAnomalyError as e:
            logger.warning("Could not parse %s: %s", self.config_file, e)
            return {}

    def apply(self, alias: str, key_path: Union[str, Path], domain: str) -> ApplyResult:
        """Bind ``key_path`` to ``domain`` in the config file.

        Raises KeyNotFoundError before touching anything if the key is
        missing, and DirectoryUnwritableError if the directory or file
        cannot be written.
        """
        key = Path(key_path).expanduser()
        if not key.is_file():
            logger.error("Refusing to bind missing key %s", key)
            raise KeyNotFoundError(str(key))

        if not self.ssh_dir.exists():
            try:
                ensure_directory(self.ssh_dir, mode=0o700)
            except OSError as e:
                raise DirectoryUnwritableError(f"Cannot create {self.ssh_dir}: {e}") from e
            logger.info("Created %s", self.ssh_dir)

        existing = self.read()
        needs_backup = self.config_file.exists() and not is_managed(existing)
        try:
            new_text = synthesize(alias, str(key), domain, existing)
        except ConfigParseAnomalyError as e:
            logger.warning("Could not parse %s (%s); rebuilding it from scratch", self.config_file, e)
            needs_backup = self.config_file.exists()
            new_text = synthesize(alias, str(key), domain, "")

        if new_text == existing and file_mode(self.config_file) == CONFIG_MODE:
            logger.debug("%s already binds %s", self.config_file, key)
            return ApplyResult(self.config_file, changed=False)

        backup_path = self._backup() if needs_backup else None
        self._write_atomic(new_text)
        logger.info("Bound %s to %s for '%s'", key, domain, alias)
        return ApplyResult(self.config_file, changed=True, backup_path=backup_path)

    def _backup(self) -> Path:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        backup_path = self.ssh_dir / f"{BACKUP_PREFIX}{timestamp}"
        try:
            shutil.copy2(self.config_file, backup_path)
        except OSError as e:
            raise DirectoryUnwritableError(f"Cannot back up {self.config_file}: {e}") from e
        logger.info("Backed up %s to %s", self.config_file, backup_path)
        return backup_path

    def _write_atomic(self, text: str) -> None:
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.ssh_dir, prefix=".config.", suffix=".tmp")
        except OSError as e:
            raise DirectoryUnwritableError(f"Cannot write to {self.ssh_dir}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                f.write(text)
            os.chmod(tmp_name, CONFIG_MODE)
            os.replace(tmp_name, self.config_file)
        except OSError as e:
            safe_remove_file(Path(tmp_name))
            raise DirectoryUnwritableError(f"Cannot write {self.config_file}: {e}") from e
