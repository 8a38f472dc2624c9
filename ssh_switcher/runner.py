"""Bounded-time execution of external commands."""

import logging
import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """What an external command did.

    ``returncode`` is None when the process never produced one, either
    because it could not be started (``error`` is set) or because it was
    killed on timeout (``timed_out`` is True).
    """

    args: list[str]
    returncode: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def started(self) -> bool:
        return not self.error

    @property
    def output(self) -> str:
        """stdout and stderr combined, the way a terminal would show them."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class CommandRunner:
    """Spawn a command, wait for it or the timeout, kill it if it overruns.

    ``subprocess.run`` kills and reaps the child when the timeout expires;
    this class turns that and launch failures into a ``CommandResult``
    instead of exceptions.
    """

    def __init__(self, default_timeout: float = 30):
        self.default_timeout = default_timeout

    def run(
        self,
        args: Sequence[str],
        timeout: Optional[float] = None,
        input: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        args = list(args)
        timeout = self.default_timeout if timeout is None else timeout
        logger.debug("Running %s (timeout %ss)", " ".join(args), timeout)

        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input,
                env=dict(env) if env is not None else None,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            logger.debug("%s timed out after %ss and was killed", args[0], timeout)
            return CommandResult(
                args=args,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                timed_out=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("%s could not be started: %s", args[0], e)
            return CommandResult(args=args, error=str(e) or type(e).__name__)

        return CommandResult(
            args=args,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data
