"""Executor protocol and the local implementation."""
from __future__ import annotations

import shlex
import subprocess
from typing import Protocol, runtime_checkable


class ExternalCommandError(Exception):
    """Raised when a command exits with a non-zero status or cannot start."""
    def __init__(self, cmd: list[str], returncode: int, stderr: str):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command {shlex.join(cmd)!r} exited {returncode}: {stderr.strip()}"
        )


@runtime_checkable
class Executor(Protocol):
    @property
    def label(self) -> str:
        """Short label for display (e.g. 'local')."""
        raise NotImplementedError

    def run(self, cmd: list[str]) -> str:
        """Run a command, return stdout. Raise ExternalCommandError on failure."""
        raise NotImplementedError


class LocalExecutor:
    """Run commands on the local machine."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    @property
    def label(self) -> str:
        return "local"

    def run(self, cmd: list[str]) -> str:
        if self.verbose:
            print(f"  [{self.label}] {shlex.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            # Binary not installed (or not executable)
            raise ExternalCommandError(cmd, 127, str(e)) from e
        if result.returncode != 0:
            raise ExternalCommandError(cmd, result.returncode, result.stderr)
        return result.stdout
