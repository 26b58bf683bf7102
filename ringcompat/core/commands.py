"""Subprocess execution shared by the resolver and the topology builder.

Commands are always argv lists.  ``CommandRunner.run`` blocks; callers that
need concurrency (the two revision builds) push it onto a worker thread.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .exceptions import CommandExecutionError

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 4000


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished command.

    Attributes:
        argv: The executed command line.
        returncode: Process exit status.
        stdout: Captured standard output.
        stderr: Captured standard error.

    """

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` if the command exited with status 0."""
        return self.returncode == 0


def format_argv(argv: list[str] | tuple[str, ...]) -> str:
    """Render an argv list as a shell-quoted string for logs."""
    return " ".join(shlex.quote(str(token)) for token in argv)


class CommandRunner:
    """Run external commands with captured output and optional timeout."""

    def __init__(self) -> None:
        """Initialize the runner."""
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def run(
        self,
        argv: list[str],
        *,
        check: bool = True,
        timeout: float | None = None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        input_text: str | None = None,
    ) -> CommandResult:
        """Execute *argv* and wait for it to finish.

        Args:
            argv: Command line; never a shell string.
            check: Raise on a non-zero exit status.
            timeout: Seconds before the command is killed.
            cwd: Working directory.
            env: Extra environment variables merged over ``os.environ``.
            input_text: Text fed to the command's stdin.

        Returns:
            The ``CommandResult``.

        Raises:
            CommandExecutionError: On timeout, a missing executable, or a
                non-zero exit when *check* is set.

        """
        if isinstance(argv, str):
            raise TypeError("run() expects argv list, not a string")
        pretty = format_argv(argv)
        self._logger.debug("exec: %s", pretty)
        merged_env = {**os.environ, **env} if env else None
        try:
            proc = subprocess.run(
                [str(token) for token in argv],
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=str(cwd) if cwd is not None else None,
                env=merged_env,
                input=input_text,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandExecutionError(
                f"Command timed out after {timeout}s: {pretty}",
                details={"timeout": timeout},
            ) from exc
        except OSError as exc:
            raise CommandExecutionError(
                f"Command could not be started: {pretty}",
                details={"error": str(exc)},
            ) from exc

        result = CommandResult(
            argv=tuple(str(token) for token in argv),
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if check and not result.ok:
            output = (result.stderr or result.stdout).strip()[-MAX_OUTPUT_CHARS:]
            raise CommandExecutionError(
                f"Command failed ({result.returncode}): {pretty}",
                details={"output": output} if output else None,
            )
        return result
