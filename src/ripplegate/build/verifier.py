"""Build verifier: runs the build and routes diagnostics back onto stages."""

from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Sequence
from pathlib import Path

from ripplegate.build.exec import ExecResult, run_command
from ripplegate.build.types import (
    TIMEOUT_DIAGNOSTIC,
    BuildClassification,
    BuildResult,
    Diagnostic,
    DiagnosticRule,
)
from ripplegate.utils.timestamps import Clock, wallclock_timestamp
from ripplegate.workflow.types import Stage

logger = logging.getLogger(__name__)

# Order matters: the first matching rule wins.
DEFAULT_RULES: tuple[DiagnosticRule, ...] = (
    DiagnosticRule(
        name="unresolved-member",
        pattern=(
            r"unresolved (member|property|reference|symbol)"
            r"|cannot find symbol|has no attribute|undefined (member|property)"
        ),
        stage=Stage.FACTS_DOCUMENTED,
    ),
    DiagnosticRule(
        name="type-mismatch",
        pattern=r"type mismatch|required conversion|incompatible types|cannot be converted",
        stage=Stage.FACTS_DOCUMENTED,
    ),
    DiagnosticRule(
        name="no-matching-signature",
        pattern=(
            r"no matching (signature|overload|function|method|constructor)"
            r"|none of the following (functions|candidates)|no overload"
        ),
        stage=Stage.DEPENDENCIES_MAPPED,
    ),
)

FALLBACK_STAGE = Stage.GENERATED


def normalize_command(command: str | Sequence[str]) -> list[str]:
    """Split a command string with shell quoting rules; pass argv lists through."""
    argv = shlex.split(command) if isinstance(command, str) else [str(part) for part in command]
    if not argv:
        raise ValueError("build command is empty")
    return argv


def classify_line(line: str, rules: Sequence[DiagnosticRule] = DEFAULT_RULES) -> Diagnostic:
    """Route one diagnostic line to the stage of the first matching rule."""
    for rule in rules:
        if re.search(rule.pattern, line, re.IGNORECASE):
            return Diagnostic(text=line, routed_stage=rule.stage, rule=rule.name)
    return Diagnostic(text=line, routed_stage=FALLBACK_STAGE, rule=None)


def _diagnostic_lines(result: ExecResult) -> list[str]:
    lines: list[str] = []
    for stream in (result.stderr, result.stdout):
        lines.extend(line.rstrip() for line in stream.splitlines() if line.strip())
    return lines


def run_build(
    change_id: str,
    command: str | Sequence[str],
    *,
    cwd: Path | None = None,
    timeout_sec: float | None = None,
    rules: Sequence[DiagnosticRule] = DEFAULT_RULES,
    clock: Clock = wallclock_timestamp,
) -> BuildResult:
    """Invoke the build command and classify its outcome.

    Exit code 0 is success. A failed build gets one routed diagnostic per
    non-blank output line; a timed-out build gets the single diagnostic
    ``timeout`` routed to ``compiled`` for retry.
    """
    argv = normalize_command(command)
    started_at = clock()
    logger.info("build for %s: %s", change_id, shlex.join(argv))
    result = run_command(argv, cwd=(cwd or Path.cwd()), timeout_sec=timeout_sec)

    if result.timed_out:
        logger.warning("build for %s timed out after %.1fs", change_id, result.duration_sec)
        diagnostics: tuple[Diagnostic, ...] = (
            Diagnostic(text=TIMEOUT_DIAGNOSTIC, routed_stage=Stage.COMPILED, rule="timeout"),
        )
        classification = BuildClassification.FAILURE
    elif result.returncode == 0:
        diagnostics = tuple(
            Diagnostic(text=line, routed_stage=None) for line in _diagnostic_lines(result)
        )
        classification = BuildClassification.SUCCESS
    else:
        lines = _diagnostic_lines(result) or [f"build exited with status {result.returncode}"]
        diagnostics = tuple(classify_line(line, rules) for line in lines)
        classification = BuildClassification.FAILURE

    return BuildResult(
        change_id=change_id,
        command=tuple(argv),
        classification=classification,
        exit_code=result.returncode,
        timed_out=result.timed_out,
        diagnostics=diagnostics,
        started_at=started_at,
        duration_sec=round(result.duration_sec, 3),
    )
