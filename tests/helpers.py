"""Test doubles shared across the test modules: a scripted command runner, a stateful agent and real key pairs."""

from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from ssh_switcher.runner import CommandResult, CommandRunner


class FakeRunner(CommandRunner):
    """CommandRunner that answers from registered handlers instead of spawning processes.

    Handlers match on an argument prefix; the most recently registered match wins.
    Unmatched commands behave like a missing binary.
    """

    def __init__(self):
        super().__init__()
        self.calls = []
        self.handlers = []

    def on(self, *prefix, handler=None, **result):
        self.handlers.append((list(prefix), handler or result))

    def run(self, args, timeout=None, input=None, env=None):
        args = list(args)
        self.calls.append(args)
        for prefix, response in reversed(self.handlers):
            if args[: len(prefix)] == prefix:
                if callable(response):
                    return response(args)
                return CommandResult(args=args, **response)
        return CommandResult(args=args, error=f"[Errno 2] No such file or directory: '{args[0]}'")

    def commands(self, name):
        return [call for call in self.calls if call[0] == name]


class FakeAgent:
    """Stateful ssh-agent behind a FakeRunner."""

    def __init__(self, runner, keys=()):
        self.keys = list(keys)
        runner.on("ssh-add", handler=self._add)
        runner.on("ssh-add", "-l", handler=self._list)
        runner.on("ssh-add", "-D", handler=self._clear)

    def _list(self, args):
        if not self.keys:
            return CommandResult(args=args, returncode=1, stdout="The agent has no identities.\n")
        return CommandResult(args=args, returncode=0, stdout="\n".join(self.keys) + "\n")

    def _clear(self, args):
        self.keys = []
        return CommandResult(args=args, returncode=0, stderr="All identities removed.\n")

    def _add(self, args):
        path = args[-1]
        self.keys.append(f"256 SHA256:{Path(path).name}fingerprint {path} (ED25519)")
        return CommandResult(args=args, returncode=0, stderr=f"Identity added: {path}\n")


def write_key_pair(directory, name, comment="user@example.com", mode=0o600, with_public=True):
    """Write a real ed25519 key pair and return the private key path."""
    private_key = ed25519.Ed25519PrivateKey.generate()
    private_path = Path(directory) / name
    private_path.write_bytes(
        private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.OpenSSH,
            serialization.NoEncryption(),
        )
    )
    private_path.chmod(mode)
    if with_public:
        public = private_key.public_key().public_bytes(
            serialization.Encoding.OpenSSH,
            serialization.PublicFormat.OpenSSH,
        )
        Path(f"{private_path}.pub").write_text(f"{public.decode()} {comment}\n")
    return private_path
