"""Utility functions and helpers."""

import logging
import os
import platform
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

SSH_KEY_TYPES = (
    "ssh-rsa",
    "ssh-dss",
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
)

PACKAGE_LOGGER = "ssh_switcher"


def get_ssh_directory() -> Path:
    """Get the user's SSH directory path."""
    return Path.home() / ".ssh"


def get_config_directory(app_name: str = "ssh-switcher") -> Path:
    """Get the platform-appropriate configuration directory."""
    system = platform.system()

    if system == "Windows":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / app_name
        return Path.home() / "AppData" / "Roaming" / app_name

    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / app_name

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / app_name
    return Path.home() / ".config" / app_name


def expand_path(path: Union[str, Path]) -> Path:
    """Expand user home and resolve to an absolute path."""
    return Path(path).expanduser().resolve()


def ensure_directory(path: Path, mode: int = 0o700) -> None:
    """Create a directory if needed and enforce its permissions.

    Raises FileExistsError when a non-directory already occupies the path.
    """
    if path.exists() and not path.is_dir():
        raise FileExistsError(f"Path exists and is not a directory: {path}")

    path.mkdir(parents=True, exist_ok=True, mode=mode)
    if platform.system() != "Windows":
        path.chmod(mode)


def safe_remove_file(path: Path) -> bool:
    """Remove a file, returning False instead of raising on failure."""
    try:
        path.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def file_mode(path: Path) -> Optional[int]:
    """Return the permission bits of a path, or None if it cannot be stat'ed."""
    try:
        return path.stat().st_mode & 0o777
    except OSError:
        return None


def format_mode(mode: Optional[int]) -> str:
    """Format permission bits the way ``chmod`` takes them (``0o644`` -> ``644``)."""
    if mode is None:
        return "unknown"
    return f"{mode:03o}"


def validate_ssh_key_format(key: Optional[str]) -> bool:
    """Check whether a string looks like an OpenSSH public key line."""
    if not key:
        return False
    parts = key.strip().split()
    return len(parts) >= 2 and parts[0] in SSH_KEY_TYPES


def configure_logging(level: Union[int, str] = logging.WARNING, console: Optional[Console] = None) -> None:
    """Route the package logger through a rich handler.

    Safe to call more than once; the previous rich handler is replaced.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
    )
    logger.addHandler(handler)
    logger.setLevel(level if isinstance(level, int) else level.upper())
