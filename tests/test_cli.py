"""Tests for CLI interface."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from ssh_switcher import __version__
from ssh_switcher.cli import app
from ssh_switcher.errors import KeyNotFoundError, PermissionInsecureError
from ssh_switcher.models import (
    AutoFixReport,
    Conflict,
    ConflictType,
    ConfigAnomaly,
    DetectionResult,
    HealthVerdict,
    Identity,
    KeyMaterial,
    KeyReport,
    Severity,
    ValidationIssue,
    ValidationReport,
)
from ssh_switcher.ssh_config import ApplyResult
from ssh_switcher.switcher import SwitchResult


@pytest.fixture
def runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def mock_engine():
    """Replace the engine the commands talk to."""
    engine = MagicMock()
    engine.config.load_identities.return_value = []
    with patch('ssh_switcher.cli.get_engine', return_value=engine):
        yield engine


def wrong_key_conflict():
    return Conflict(
        type=ConflictType.WRONG_KEY,
        severity=Severity.CRITICAL,
        description="Key for 'work' authenticates as 'bob', expected 'alice'",
        resolution="Point 'work' at the right key",
    )


def agent_conflict():
    return Conflict(
        type=ConflictType.MULTIPLE_KEYS,
        severity=Severity.WARNING,
        description="ssh-agent holds 3 keys; the server may pick the wrong one",
        resolution="Clear the agent",
        auto_fix=True,
    )


class TestVersion:
    """Test global options."""

    def test_version(self, runner):
        """Test --version prints the version."""
        result = runner.invoke(app, ['--version'])

        assert result.exit_code == 0
        assert f"SSH Switcher v{__version__}" in result.stdout

    def test_help(self, runner):
        """Test every command is listed."""
        result = runner.invoke(app, ['--help'])

        assert result.exit_code == 0
        for command in ("switch", "doctor", "validate", "repair-permissions", "show-config"):
            assert command in result.stdout


class TestSwitchCommand:
    """Test the switch command."""

    def test_switch_success(self, runner, mock_engine):
        """Test a successful switch prints its steps."""
        mock_engine.switch_identity.return_value = SwitchResult(
            alias="work",
            key_path="/keys/work",
            domain="github.com",
            config=ApplyResult(Path("/home/me/.ssh/config"), changed=True),
            steps=["Bound /keys/work to github.com"],
            warnings=["Could not load key into ssh-agent: passphrase required"],
        )

        result = runner.invoke(app, ['switch', 'work', '/keys/work', '--domain', 'github.com'])

        assert result.exit_code == 0
        assert "Switched to identity 'work'" in result.stdout
        assert "Bound /keys/work to github.com" in result.stdout
        assert "passphrase required" in result.stdout
        mock_engine.switch_identity.assert_called_once_with(
            'work', '/keys/work', 'github.com', test_connection=None, remember=False
        )

    def test_switch_no_test(self, runner, mock_engine):
        """Test --no-test disables the connection test."""
        mock_engine.switch_identity.return_value = SwitchResult(alias="work", key_path="/k", domain="github.com")

        runner.invoke(app, ['switch', 'work', '/k', '--no-test'])

        mock_engine.switch_identity.assert_called_once_with('work', '/k', None, test_connection=False, remember=False)

    def test_switch_remember(self, runner, mock_engine):
        """Test --remember asks the engine to store the identity."""
        mock_engine.switch_identity.return_value = SwitchResult(
            alias="work", key_path="/k", domain="github.com", steps=["Remembered identity 'work'"]
        )

        result = runner.invoke(app, ['switch', 'work', '/k', '--remember'])

        assert result.exit_code == 0
        assert "Remembered identity 'work'" in result.stdout
        mock_engine.switch_identity.assert_called_once_with('work', '/k', None, test_connection=None, remember=True)

    def test_switch_missing_key(self, runner, mock_engine):
        """Test a missing key fails with exit code 1."""
        mock_engine.switch_identity.side_effect = KeyNotFoundError("/keys/none")

        result = runner.invoke(app, ['switch', 'work', '/keys/none'])

        assert result.exit_code == 1
        assert "Failed to switch to 'work'" in result.stdout
        assert "SSH key not found" in result.stdout

    def test_switch_unexpected_error(self, runner, mock_engine):
        """Test unexpected errors are reported, not raised."""
        mock_engine.switch_identity.side_effect = RuntimeError("disk on fire")

        result = runner.invoke(app, ['switch', 'work', '/keys/work'])

        assert result.exit_code == 1
        assert "Error switching identity" in result.stdout


class TestDoctorCommand:
    """Test the doctor command."""

    def test_doctor_healthy(self, runner, mock_engine):
        """Test a clean report exits 0."""
        mock_engine.diagnose.return_value = DetectionResult()

        result = runner.invoke(app, ['doctor'])

        assert result.exit_code == 0
        assert "Health: excellent" in result.stdout
        mock_engine.diagnose.assert_called_once_with([])

    def test_doctor_identity_option(self, runner, mock_engine):
        """Test --identity builds identities from alias=key:user."""
        mock_engine.diagnose.return_value = DetectionResult()

        runner.invoke(app, ['doctor', '-i', 'work=/keys/work:alice', '-i', 'oss=/keys/oss'])

        identities = mock_engine.diagnose.call_args.args[0]
        assert identities == [
            Identity(alias="work", key_path="/keys/work", username="alice"),
            Identity(alias="oss", key_path="/keys/oss"),
        ]
        mock_engine.config.load_identities.assert_not_called()

    def test_doctor_remembered_alias(self, runner, mock_engine):
        """Test a bare alias is looked up in the settings file."""
        remembered = Identity(alias="work", key_path="/keys/work", username="alice")
        mock_engine.config.get_identity.return_value = remembered
        mock_engine.diagnose.return_value = DetectionResult()

        result = runner.invoke(app, ['doctor', '-i', 'work'])

        assert result.exit_code == 0
        mock_engine.config.get_identity.assert_called_once_with('work')
        mock_engine.diagnose.assert_called_once_with([remembered])

    def test_doctor_bad_identity_option(self, runner, mock_engine):
        """Test an unknown alias without a key is a usage error."""
        mock_engine.config.get_identity.return_value = None

        result = runner.invoke(app, ['doctor', '-i', 'nokey'])

        assert result.exit_code == 2
        mock_engine.diagnose.assert_not_called()

    def test_doctor_malformed_settings(self, runner):
        """Test an unreadable settings file is reported without a traceback."""
        with patch('ssh_switcher.cli.get_engine', side_effect=ValueError("Failed to load settings: bad toml")):
            result = runner.invoke(app, ['doctor'])

        assert result.exit_code == 1
        assert "Error running diagnostics" in result.stdout
        assert "Failed to load settings" in result.stdout
        assert not isinstance(result.exception, ValueError)

    def test_doctor_critical_exits_nonzero(self, runner, mock_engine):
        """Test a critical verdict fails the command."""
        conflict = wrong_key_conflict()
        mock_engine.diagnose.return_value = DetectionResult(
            conflicts=[conflict],
            recommendations=["Bind the right key to each identity: ssh-switcher switch <alias> <key>"],
            health=HealthVerdict.CRITICAL,
        )

        result = runner.invoke(app, ['doctor'])

        assert result.exit_code == 1
        assert "Health: critical" in result.stdout
        assert "wrong_key" in result.stdout
        assert "Recommendations" in result.stdout
        mock_engine.auto_fix.assert_not_called()

    def test_doctor_fix(self, runner, mock_engine):
        """Test --fix reports what was and was not fixed."""
        fixed = agent_conflict()
        failed = Conflict(
            type=ConflictType.SOCKET_ISSUES,
            severity=Severity.ERROR,
            description="SSH_AUTH_SOCK is not set",
            resolution="Start the agent",
            auto_fix=True,
        )
        skipped = wrong_key_conflict()
        mock_engine.diagnose.return_value = DetectionResult(
            conflicts=[fixed, failed, skipped], health=HealthVerdict.CRITICAL
        )
        mock_engine.auto_fix.return_value = AutoFixReport(
            fixed=[fixed], failed=[(failed, "Start the agent manually")], skipped=[skipped]
        )

        result = runner.invoke(app, ['doctor', '--fix'])

        assert result.exit_code == 0
        assert "Fixed:" in result.stdout
        assert "Not fixed:" in result.stdout
        assert "Start the agent manually" in result.stdout
        assert "1 conflicts need manual attention" in result.stdout

    def test_doctor_error(self, runner, mock_engine):
        """Test detection errors are reported."""
        mock_engine.diagnose.side_effect = RuntimeError("boom")

        result = runner.invoke(app, ['doctor'])

        assert result.exit_code == 1
        assert "Error running diagnostics" in result.stdout


class TestValidateCommand:
    """Test the validate command."""

    def test_validate_valid(self, runner, mock_engine):
        """Test a valid setup exits 0 and lists keys."""
        mock_engine.validate_all.return_value = ValidationReport(
            keys=[
                KeyReport(
                    material=KeyMaterial(private_path="/keys/id_work", key_type="ED25519", fingerprint="SHA256:abc"),
                    remote_user="alice",
                )
            ],
            recommendations=["Prefer ED25519 keys for new identities"],
        )

        result = runner.invoke(app, ['validate'])

        assert result.exit_code == 0
        assert "id_work" in result.stdout
        assert "alice" in result.stdout
        assert "SSH setup is valid" in result.stdout
        mock_engine.validate_all.assert_called_once_with(None)

    def test_validate_invalid(self, runner, mock_engine):
        """Test issues and config anomalies are shown and exit 1."""
        report = ValidationReport(
            config_anomalies=[
                ConfigAnomaly(
                    line=12,
                    description="IdentitiesOnly is 'no'; every loaded key may be offered",
                    severity=Severity.WARNING,
                    fix="Set IdentitiesOnly yes",
                )
            ],
            recommendations=["Keep private keys at 600 and ~/.ssh at 700"],
        )
        report.add_issue(
            ValidationIssue(
                severity=Severity.CRITICAL,
                category="agent",
                description="ssh-agent holds 2 keys",
                solution="Clear the agent",
                code="ssh-add -D && ssh-add <key>",
            )
        )
        mock_engine.validate_all.return_value = report

        result = runner.invoke(app, ['validate', '--domain', 'gitlab.com'])

        assert result.exit_code == 1
        assert "config line 12:" in result.stdout
        assert "ssh-agent holds 2 keys" in result.stdout
        assert "SSH setup has problems" in result.stdout
        mock_engine.validate_all.assert_called_once_with('gitlab.com')


class TestRepairPermissionsCommand:
    """Test the repair-permissions command."""

    def test_nothing_to_repair(self, runner, mock_engine):
        """Test a correct setup is reported as such."""
        mock_engine.repair_permissions.return_value = []

        result = runner.invoke(app, ['repair-permissions'])

        assert result.exit_code == 0
        assert "Permissions already correct" in result.stdout

    def test_repaired_paths_listed(self, runner, mock_engine):
        """Test each changed path is printed."""
        mock_engine.repair_permissions.return_value = [Path("/home/me/.ssh/id_work")]

        result = runner.invoke(app, ['repair-permissions'])

        assert result.exit_code == 0
        assert "Fixed permissions on" in result.stdout
        assert "id_work" in result.stdout

    def test_repair_failure(self, runner, mock_engine):
        """Test a chmod failure exits 1."""
        mock_engine.repair_permissions.side_effect = PermissionInsecureError("Could not set 600 on /keys/x")

        result = runner.invoke(app, ['repair-permissions'])

        assert result.exit_code == 1
        assert "Could not set" in result.stdout

    def test_repair_malformed_settings(self, runner):
        """Test an unreadable settings file exits 1 with its message."""
        with patch('ssh_switcher.cli.get_engine', side_effect=ValueError("Failed to load settings: bad toml")):
            result = runner.invoke(app, ['repair-permissions'])

        assert result.exit_code == 1
        assert "Failed to load settings" in result.stdout


class TestShowConfigCommand:
    """Test the show-config command."""

    def test_no_bindings(self, runner, mock_engine):
        """Test an unmanaged config is reported."""
        mock_engine.bindings.return_value = {}

        result = runner.invoke(app, ['show-config'])

        assert result.exit_code == 0
        assert "No identities are bound" in result.stdout

    def test_bindings_table(self, runner, mock_engine):
        """Test bindings are listed."""
        mock_engine.bindings.return_value = {"work": "/keys/work"}
        mock_engine.synthesizer.config_file = Path("/home/me/.ssh/config")

        result = runner.invoke(app, ['show-config', '--domain', 'github.com'])

        assert result.exit_code == 0
        assert "work" in result.stdout
        assert "/keys/work" in result.stdout
        mock_engine.bindings.assert_called_once_with('github.com')

    def test_malformed_settings(self, runner):
        """Test an unreadable settings file exits 1 with its message."""
        with patch('ssh_switcher.cli.get_engine', side_effect=ValueError("Failed to load settings: bad toml")):
            result = runner.invoke(app, ['show-config'])

        assert result.exit_code == 1
        assert "Failed to load settings" in result.stdout
