# conditions.py
"""
`if:`-style conditions for jobs and steps.

    success()   - no failure seen so far in the scope
    failure()   - at least one failure seen so far in the scope
    always()    - always run
    cancelled() - the run received an interrupt
    <anything>  - a shell predicate, true when `bash -c <expr>` exits 0

The scope decides what "failure" means: for steps it is the job-local flag
(any earlier step of this job failed), for jobs it is the global failed-job
set of the run. Note the job scope is the whole run, not the job's `needs`.
"""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Union


@dataclass(frozen=True)
class Success:
    def __str__(self) -> str:
        return "success()"


@dataclass(frozen=True)
class Failure:
    def __str__(self) -> str:
        return "failure()"


@dataclass(frozen=True)
class Always:
    def __str__(self) -> str:
        return "always()"


@dataclass(frozen=True)
class Cancelled:
    def __str__(self) -> str:
        return "cancelled()"


@dataclass(frozen=True)
class RawPredicate:
    expr: str

    def __str__(self) -> str:
        return self.expr


Condition = Union[Success, Failure, Always, Cancelled, RawPredicate]

_RESERVED = {
    "success()": Success(),
    "failure()": Failure(),
    "always()": Always(),
    "cancelled()": Cancelled(),
}

PredicateRunner = Callable[[str], bool]


def parse_condition(text: Optional[str]) -> Condition:
    if text is None or not text.strip():
        return Success()
    stripped = text.strip()
    return _RESERVED.get(stripped, RawPredicate(stripped))


def run_shell_predicate(
    expr: str,
    *,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
) -> bool:
    """Evaluate a shell boolean expression in a child process."""
    proc = subprocess.run(
        ["bash", "-c", expr],
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        capture_output=True,
        text=True,
    )
    return proc.returncode == 0


def evaluate(
    condition: Union[Condition, str, None],
    *,
    failed: bool,
    cancelled: bool = False,
    predicate: Optional[PredicateRunner] = None,
) -> bool:
    """
    Decide whether a job/step should run.

    `failed` is the failure signal of the scope, `cancelled` the run-wide
    interrupt state. Raw predicates go through `predicate` (defaults to a
    plain host `bash -c`).
    """
    cond = parse_condition(condition) if isinstance(condition, str) or condition is None else condition

    if isinstance(cond, Always):
        return True
    if isinstance(cond, Cancelled):
        return cancelled
    if cancelled:
        # nothing new starts after an interrupt unless it asked for always()/cancelled()
        return False
    if isinstance(cond, Success):
        return not failed
    if isinstance(cond, Failure):
        return failed

    runner = predicate or run_shell_predicate
    return runner(cond.expr)
