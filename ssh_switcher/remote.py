"""Restricted SSH handshakes against a Git hosting platform."""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from .errors import (
    PermissionInsecureError,
    RemoteDeniedError,
    RemoteMismatchError,
    SwitcherError,
    TrustStoreMissingError,
)
from .runner import CommandRunner

logger = logging.getLogger(__name__)

GREETING_PATTERNS = (
    re.compile(r"Hi ([\w.-]+)!"),
    re.compile(r"Welcome to GitLab, @([\w.-]+)!"),
    re.compile(r"logged in as ([\w.-]+)"),
)
SUCCESS_MARKERS = ("successfully authenticated", "Welcome to GitLab", "logged in as")
DENIED_MARKER = "Permission denied"
HOST_KEY_MARKER = "Host key verification failed"
UNPROTECTED_MARKER = "UNPROTECTED PRIVATE KEY FILE"


class RemoteStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    DENIED = "denied"
    HOST_KEY = "host_key"
    INSECURE_KEY = "insecure_key"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class RemoteProbeResult:
    domain: str
    key_path: str
    status: RemoteStatus
    user: str = ""
    output: str = ""

    @property
    def authenticated(self) -> bool:
        return self.status == RemoteStatus.AUTHENTICATED

    def raise_for_status(self, expected_user: str = "") -> None:
        """Raise the error matching this handshake, or nothing if it is the expected user."""
        if self.authenticated:
            if expected_user and self.user and self.user.lower() != expected_user.lower():
                raise RemoteMismatchError(self.key_path, expected_user, self.user)
            return
        if self.status == RemoteStatus.DENIED:
            raise RemoteDeniedError(f"{self.domain} rejected {self.key_path}")
        if self.status == RemoteStatus.HOST_KEY:
            raise TrustStoreMissingError(f"Host key for {self.domain} is not trusted")
        if self.status == RemoteStatus.INSECURE_KEY:
            raise PermissionInsecureError(f"ssh refused {self.key_path}: permissions are too open")
        if self.status == RemoteStatus.TIMEOUT:
            raise SwitcherError(f"Authentication timeout reaching {self.domain}")
        raise SwitcherError(f"SSH connection to {self.domain} failed: {self.output.strip()}")


def parse_remote_user(output: str) -> str:
    for pattern in GREETING_PATTERNS:
        match = pattern.search(output)
        if match:
            return match.group(1)
    return ""


class RemoteProbe:
    """Runs ``ssh -T git@<domain>`` with exactly one key offered."""

    def __init__(self, runner: Optional[CommandRunner] = None, connect_timeout: int = 10):
        self.runner = runner or CommandRunner()
        self.connect_timeout = connect_timeout

    def build_command(self, domain: str, key_path: Union[str, Path]) -> list[str]:
        return [
            "ssh",
            "-T",
            f"git@{domain}",
            "-i",
            str(key_path),
            "-o",
            "IdentitiesOnly=yes",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
        ]

    def check(self, domain: str, key_path: Union[str, Path], timeout: Optional[float] = None) -> RemoteProbeResult:
        timeout = timeout if timeout is not None else self.connect_timeout + 5
        result = self.runner.run(self.build_command(domain, key_path), timeout=timeout)
        output = result.output
        key_path = str(key_path)

        if result.timed_out:
            logger.warning("SSH handshake with %s timed out", domain)
            return RemoteProbeResult(domain, key_path, RemoteStatus.TIMEOUT, output=output)
        if not result.started:
            return RemoteProbeResult(domain, key_path, RemoteStatus.ERROR, output=result.error)

        # Platforms close the session after the greeting, so the exit status is ignored
        user = parse_remote_user(output)
        if user or any(marker in output for marker in SUCCESS_MARKERS):
            logger.debug("%s authenticated against %s as %r", key_path, domain, user)
            return RemoteProbeResult(domain, key_path, RemoteStatus.AUTHENTICATED, user=user, output=output)
        if UNPROTECTED_MARKER in output:
            return RemoteProbeResult(domain, key_path, RemoteStatus.INSECURE_KEY, output=output)
        if HOST_KEY_MARKER in output:
            return RemoteProbeResult(domain, key_path, RemoteStatus.HOST_KEY, output=output)
        if DENIED_MARKER in output:
            return RemoteProbeResult(domain, key_path, RemoteStatus.DENIED, output=output)
        return RemoteProbeResult(domain, key_path, RemoteStatus.ERROR, output=output)
