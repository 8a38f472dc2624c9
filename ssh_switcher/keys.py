"""Inspection and repair of SSH key material on disk."""

import base64
import binascii
import hashlib
import logging
import os
import platform
import re
from pathlib import Path
from typing import Iterable, Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from .errors import KeyNotFoundError, PermissionInsecureError, SwitcherError
from .models import KeyMaterial, LoadedKey
from .runner import CommandRunner
from .utils import file_mode, format_mode, validate_ssh_key_format

logger = logging.getLogger(__name__)

PRIVATE_KEY_MODE = 0o600
PUBLIC_KEY_MODE = 0o644
SSH_DIR_MODE = 0o700
CONFIG_MODE = 0o600

EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")

# "256 SHA256:abc... user@example.com (ED25519)", shared by ssh-keygen -l and ssh-add -l
FINGERPRINT_LINE = re.compile(r"^(\d+)\s+(\S+)\s*(.*?)\s*(?:\(([^()]+)\))?\s*$")


def parse_fingerprint_line(line: str) -> Optional[LoadedKey]:
    """Parse one ``ssh-keygen -l`` / ``ssh-add -l`` output line."""
    match = FINGERPRINT_LINE.match(line.strip())
    if not match or ":" not in match.group(2):
        return None
    bits, fingerprint, comment, key_type = match.groups()
    return LoadedKey(
        bits=int(bits),
        fingerprint=fingerprint,
        comment=comment,
        key_type=(key_type or "").upper(),
    )


def extract_email(comment: str) -> str:
    match = EMAIL_PATTERN.search(comment or "")
    return match.group(0) if match else ""


def public_key_fingerprint(public_key: str) -> Optional[str]:
    """Compute the OpenSSH SHA256 fingerprint of a public key line."""
    if not validate_ssh_key_format(public_key):
        return None
    parts = public_key.split()
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError):
        return None
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode().rstrip("=")
    return f"SHA256:{digest}"


class KeyMaterialProbe:
    """Reads facts about key files; writes only when asked to repair."""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    def inspect(self, key_path: Union[str, Path]) -> KeyMaterial:
        """Describe a private key and its ``.pub`` sibling.

        Missing files are reported through the ``exists`` flags, never raised.
        """
        private_path = Path(key_path)
        public_path = Path(f"{private_path}.pub")
        material = KeyMaterial(
            private_path=str(private_path),
            public_path=str(public_path),
            exists=private_path.is_file(),
            public_exists=public_path.is_file(),
            mode=file_mode(private_path),
        )

        if material.public_exists:
            try:
                public_key = public_path.read_text(encoding="utf-8").strip()
            except OSError as e:
                logger.warning("Could not read public key %s: %s", public_path, e)
                return material

            parts = public_key.split(None, 2)
            if parts:
                material.key_type = _short_type(parts[0])
            if len(parts) > 2:
                material.comment = parts[2]
                material.email = extract_email(parts[2])
            material.fingerprint = public_key_fingerprint(public_key) or ""

        return material

    def fingerprint(self, key_path: Union[str, Path], timeout: float = 10) -> Optional[LoadedKey]:
        """Ask ``ssh-keygen -lf`` for the fingerprint line of a key."""
        result = self.runner.run(["ssh-keygen", "-lf", str(key_path)], timeout=timeout)
        if not result.ok:
            logger.debug("ssh-keygen could not fingerprint %s: %s", key_path, result.output or result.error)
            return None
        for line in result.stdout.splitlines():
            parsed = parse_fingerprint_line(line)
            if parsed:
                return parsed
        return None


def derive_public_key(key_path: Union[str, Path]) -> Path:
    """Regenerate ``<key>.pub`` from the private key."""
    private_path = Path(key_path)
    if not private_path.is_file():
        raise KeyNotFoundError(str(private_path))

    data = private_path.read_bytes()
    try:
        if b"OPENSSH PRIVATE KEY" in data:
            private_key = serialization.load_ssh_private_key(data, password=None)
        else:
            private_key = serialization.load_pem_private_key(data, password=None)
    except TypeError as e:
        # cryptography raises TypeError when an encrypted key is loaded without a password
        raise SwitcherError(f"Cannot derive public key for {private_path}: passphrase required") from e
    except (ValueError, UnsupportedAlgorithm) as e:
        raise SwitcherError(f"Cannot derive public key for {private_path}: {e}") from e

    public_bytes = private_key.public_key().public_bytes(
        serialization.Encoding.OpenSSH,
        serialization.PublicFormat.OpenSSH,
    )
    public_path = Path(f"{private_path}.pub")
    public_path.write_bytes(public_bytes + b"\n")
    if platform.system() != "Windows":
        public_path.chmod(PUBLIC_KEY_MODE)
    logger.info("Derived public key %s", public_path)
    return public_path


def repair_permissions(ssh_dir: Path, extra_keys: Iterable[Union[str, Path]] = ()) -> list[Path]:
    """Restrict the SSH directory, config and key files to their owner.

    Returns the paths whose mode actually changed. Raises
    PermissionInsecureError on the first path that cannot be changed.
    """
    targets: list[tuple[Path, int]] = []
    if ssh_dir.is_dir():
        targets.append((ssh_dir, SSH_DIR_MODE))
        config_file = ssh_dir / "config"
        if config_file.is_file():
            targets.append((config_file, CONFIG_MODE))
        for entry in sorted(ssh_dir.iterdir()):
            if not entry.is_file() or not entry.name.startswith("id_"):
                continue
            mode = PUBLIC_KEY_MODE if entry.name.endswith(".pub") else PRIVATE_KEY_MODE
            targets.append((entry, mode))

    for key in extra_keys:
        key = Path(key)
        if key.is_file() and all(key != path for path, _ in targets):
            targets.append((key, PRIVATE_KEY_MODE))

    repaired = []
    for path, mode in targets:
        current = file_mode(path)
        if current == mode:
            continue
        try:
            os.chmod(path, mode)
        except OSError as e:
            raise PermissionInsecureError(
                f"Could not set {path} to {format_mode(mode)} (currently {format_mode(current)}): {e}"
            ) from e
        logger.info("Changed %s from %s to %s", path, format_mode(current), format_mode(mode))
        repaired.append(path)
    return repaired


def _short_type(algorithm: str) -> str:
    """``ssh-ed25519`` -> ``ED25519``, ``ecdsa-sha2-nistp256`` -> ``ECDSA``."""
    name = algorithm.split("@", 1)[0]
    if name.startswith("ssh-"):
        name = name[len("ssh-"):]
    if name.startswith("sk-ssh-"):
        name = name[len("sk-ssh-"):] + "-SK"
    if name == "dss":
        return "DSA"
    if name.startswith("ecdsa") or name.startswith("sk-ecdsa"):
        return "ECDSA-SK" if name.startswith("sk-") else "ECDSA"
    return name.upper()
