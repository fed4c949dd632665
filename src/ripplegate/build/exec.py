"""Command runner for the external build collaborator."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class ExecResult:
    """Result envelope for subprocess execution."""

    argv: tuple[str, ...]
    cwd: Path
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool
    duration_sec: float


def _kill_group(proc: subprocess.Popen[str]) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        # Group already gone.
        pass


def run_command(
    argv: list[str],
    *,
    cwd: Path,
    timeout_sec: float | None = None,
) -> ExecResult:
    """Run command and return structured result.

    The command runs in its own session. On timeout the whole process group is
    killed, so tools that fork workers (make, gradle) do not outlive the build.
    Partial output is kept and ``returncode`` is None.
    """
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError) as exc:
        # Same convention as a shell: 127 for a command that cannot be run.
        return ExecResult(
            argv=tuple(argv),
            cwd=cwd.resolve(),
            returncode=127,
            stdout="",
            stderr=f"cannot execute {argv[0]}: {exc}",
            timed_out=False,
            duration_sec=time.monotonic() - started,
        )

    try:
        stdout, stderr = proc.communicate(timeout=timeout_sec)
    except subprocess.TimeoutExpired:
        _kill_group(proc)
        stdout, stderr = proc.communicate()
        return ExecResult(
            argv=tuple(argv),
            cwd=cwd.resolve(),
            returncode=None,
            stdout=stdout,
            stderr=stderr,
            timed_out=True,
            duration_sec=time.monotonic() - started,
        )
    return ExecResult(
        argv=tuple(argv),
        cwd=cwd.resolve(),
        returncode=proc.returncode,
        stdout=stdout,
        stderr=stderr,
        timed_out=False,
        duration_sec=time.monotonic() - started,
    )
