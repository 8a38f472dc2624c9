"""Configuration management for ssh-switcher settings."""

import copy
import logging
import shutil
from pathlib import Path
from typing import Any, Optional

import toml

from .models import Identity
from .utils import ensure_directory, expand_path, get_config_directory, get_ssh_directory

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: dict[str, Any] = {
    "ssh": {"directory": ""},
    "timeouts": {
        "agent_probe": 5,
        "remote_probe": 10,
        "validator_probe": 30,
    },
    "switch": {
        "test_connection": True,
        "default_domain": "github.com",
    },
    "logging": {"level": "WARNING"},
}


class Config:
    """Reads and writes ``settings.toml`` in the user's config directory."""

    def __init__(self):
        self.config_dir = get_config_directory()
        self.settings_file = self.config_dir / "settings.toml"

    def load_settings(self) -> dict[str, Any]:
        """Load settings with defaults filled in for anything missing."""
        settings = copy.deepcopy(DEFAULT_SETTINGS)
        if not self.settings_file.exists():
            return settings

        try:
            with open(self.settings_file, encoding="utf-8") as f:
                user_settings = toml.load(f)
        except (toml.TomlDecodeError, OSError) as e:
            raise ValueError(f"Failed to load settings: {e}") from e

        return _merge(settings, user_settings)

    def save_settings(self, settings: dict[str, Any]) -> None:
        """Save settings, keeping one backup of the previous file."""
        try:
            ensure_directory(self.config_dir, mode=0o755)

            if self.settings_file.exists():
                backup_file = self.settings_file.with_suffix(".toml.backup")
                shutil.copy2(self.settings_file, backup_file)

            with open(self.settings_file, "w", encoding="utf-8") as f:
                toml.dump(settings, f)
        except OSError as e:
            raise ValueError(f"Failed to save settings: {e}") from e

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self.load_settings().get(section, {}).get(key, default)

    def remember_identity(self, identity: Identity) -> None:
        """Store an identity under ``[identities.<alias>]``.

        Empty fields leave whatever the table already holds.
        """
        settings = self.load_settings()
        identities = settings.setdefault("identities", {})
        entry = dict(identities.get(identity.alias) or {})
        for name in ("key_path", "domain", "username", "name", "email"):
            value = getattr(identity, name)
            if value:
                entry[name] = value
        identities[identity.alias] = entry
        self.save_settings(settings)
        logger.info("Remembered identity '%s' in %s", identity.alias, self.settings_file)

    @property
    def ssh_dir(self) -> Path:
        configured = self.get("ssh", "directory")
        return expand_path(configured) if configured else get_ssh_directory()

    def timeout(self, name: str) -> float:
        return float(self.get("timeouts", name, DEFAULT_SETTINGS["timeouts"].get(name, 10)))

    def load_identities(self) -> list[Identity]:
        """Return identities declared under ``[identities.<alias>]``.

        Entries without a key path are still returned; the detector reports
        them rather than this loader rejecting them.
        """
        declared = self.load_settings().get("identities", {})
        identities = []
        for alias, entry in declared.items():
            if not isinstance(entry, dict):
                logger.warning("Ignoring identity '%s': expected a table", alias)
                continue
            key_path = entry.get("key_path", "")
            identities.append(
                Identity(
                    alias=alias,
                    key_path=str(expand_path(key_path)) if key_path else "",
                    domain=entry.get("domain", ""),
                    platform=entry.get("platform", "github"),
                    username=entry.get("username", ""),
                    name=entry.get("name", ""),
                    email=entry.get("email", ""),
                )
            )
        return identities

    def get_identity(self, alias: str) -> Optional[Identity]:
        for identity in self.load_identities():
            if identity.alias == alias:
                return identity
        return None


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _merge(base[key], value)
        else:
            base[key] = value
    return base
