"""Error taxonomy for the SSH identity isolation engine."""


class SwitcherError(RuntimeError):
    """Base class for every error raised by ssh-switcher."""


class KeyNotFoundError(SwitcherError, ValueError):
    """The configured private key does not exist on disk."""

    def __init__(self, key_path: str):
        self.key_path = key_path
        super().__init__(f"SSH key not found: {key_path}")


class PermissionInsecureError(SwitcherError):
    """A key file or the SSH directory could not be restricted to its owner."""


class DirectoryUnwritableError(SwitcherError):
    """The SSH directory or config file could not be created or written."""


class AgentUnreachableError(SwitcherError):
    """No key agent answered on the configured socket."""


class AgentUnresponsiveError(SwitcherError):
    """The key agent did not answer before the probe timeout."""


class RemoteMismatchError(SwitcherError):
    """A key authenticated as a different remote identity than expected."""

    def __init__(self, key_path: str, expected: str, actual: str):
        self.key_path = key_path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Key {key_path} authenticates as '{actual}' but '{expected}' was expected"
        )


class RemoteDeniedError(SwitcherError):
    """The remote host rejected the key."""


class ConfigParseAnomalyError(SwitcherError):
    """The SSH config file contains a construct the parser cannot place."""

    def __init__(self, message: str, line: int = 0):
        self.line = line
        super().__init__(message)


class TrustStoreMissingError(SwitcherError):
    """known_hosts is missing or lacks an entry for the platform host."""


class SocketStaleError(SwitcherError):
    """The agent socket referenced by the environment is gone."""
