"""Process boundary for external command-line tools.

Everything that shells out (the ``openclaw`` job scheduler, ``unzip``) goes through a
``ProcessRunner`` so tests can substitute canned responses.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class CommandResult:
    status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.status == 0

    def detail(self) -> str:
        """Best human-readable failure detail."""
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.status}"


class ProcessRunner(Protocol):
    def run(self, command: str, args: list[str], *, timeout: float | None = None) -> CommandResult:
        """Run ``command`` with ``args``.

        Raises FileNotFoundError when the binary is missing and
        subprocess.TimeoutExpired when ``timeout`` elapses.
        """
        ...


class SubprocessRunner:
    """Production runner backed by ``subprocess.run``."""

    def run(self, command: str, args: list[str], *, timeout: float | None = None) -> CommandResult:
        completed = subprocess.run(
            [command, *args],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return CommandResult(
            status=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
