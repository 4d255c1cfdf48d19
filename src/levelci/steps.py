# steps.py
"""
Step runner: executes the ordered steps of one job inside an executor.

Per step: condition (job-local failure flag) -> retry loop -> timeout around
the whole retry loop. A failing step sets the job flag and never clears it;
it does not abort the job, later steps still run if their condition allows.
"""
from __future__ import annotations

import shlex
import subprocess
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from .conditions import evaluate
from .env import layer_env
from .errors import TIMEOUT_EXIT_CODE, SetupFailure, StepFailure, TimeoutFailure, hint_for
from .model import Job, Step
from .retry import RetryEvent, merge_retry, run_with_retry
from .timeout import TimeoutScope, format_duration, merge_timeout, parse_duration, run_with_timeout

if TYPE_CHECKING:
    from .context import RunContext
    from .executors.base import Executor


@dataclass(frozen=True)
class Launch:
    """How to start a command in an executor: argv + host-side cwd/env."""
    argv: List[str]
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None


@dataclass
class StepResult:
    name: str
    status: str  # "success" | "failure" | "skipped"
    exit_code: Optional[int] = None
    attempts: int = 0
    duration: float = 0.0
    error: Optional[StepFailure] = None
    # skipped only because the run was interrupted
    interrupted: bool = False

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, TimeoutFailure)


@dataclass
class JobRunResult:
    job: str
    failed: bool = False
    steps: List[StepResult] = field(default_factory=list)

    @property
    def failed_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.status == "failure"]

    @property
    def errors(self) -> List[StepFailure]:
        return [s.error for s in self.steps if s.error is not None]

    @property
    def interrupted_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.interrupted]


def step_prelude(job_env_path: str, cwd: Optional[str] = None, strict: bool = True) -> str:
    """
    Shell lines run before every step: export what earlier steps appended to
    $JOB_ENV, move into the step cwd, then fail on the first error.
    """
    lines = [
        "set -a",
        f'[ -f {shlex.quote(job_env_path)} ] && . {shlex.quote(job_env_path)}',
        "set +a",
    ]
    if cwd:
        lines.append(f"cd {shlex.quote(cwd)}")
    if strict:
        lines.append("set -eo pipefail")
    return "\n".join(lines)


class StepRunner:
    def __init__(self, executor: "Executor", ctx: "RunContext", job: Job, env: Dict[str, str]):
        self.executor = executor
        self.ctx = ctx
        self.job = job
        self.env = env
        self.console = ctx.console
        # job-local failure flag, monotonic
        self.failed = False

    # ---- public ----

    def run(self) -> JobRunResult:
        result = JobRunResult(job=self.job.name)
        for step in self.job.steps:
            step_result = self.run_step(step)
            result.steps.append(step_result)
        result.failed = self.failed
        return result

    def run_step(self, step: Step) -> StepResult:
        step_env = layer_env(self.env, step.env)

        should_run = evaluate(
            step.condition,
            failed=self.failed,
            cancelled=self.ctx.state.cancelled,
            predicate=lambda expr: self._predicate(expr, step_env),
        )
        if not should_run:
            self.console.print_step_skipped(self.job.name, step.name, step.condition)
            interrupted = self.ctx.state.cancelled and evaluate(
                step.condition,
                failed=self.failed,
                predicate=lambda expr: self._predicate(expr, step_env),
            )
            return StepResult(name=step.name, status="skipped", interrupted=interrupted)

        self.console.print_step(self.job.name, step.name)

        policy = merge_retry(self.ctx.workflow_retry, self.job.retry, step.retry)
        limit = merge_timeout(self.ctx.workflow_timeout, self.job.timeout, step.timeout)
        seconds = parse_duration(limit)
        attempts = {"n": 0}

        def on_retry(event: RetryEvent) -> None:
            self.console.print_retry(
                self.job.name, step.name, event.attempt, event.max_attempts,
                event.delay, event.backoff, event.exit_code,
            )

        def work(scope: TimeoutScope) -> int:
            def attempt(n: int) -> int:
                attempts["n"] = n
                return self._run_once(step, step_env, scope)

            code, _ = run_with_retry(
                policy,
                attempt,
                on_retry=on_retry,
                sleep=scope.sleep,
                should_stop=lambda: scope.expired,
            )
            return code

        def on_timeout(elapsed: float) -> None:
            self.console.print_timeout(self.job.name, step.name, format_duration(seconds), elapsed)

        start = time.monotonic()
        exit_code = run_with_timeout(
            seconds,
            work,
            poll_interval=self.ctx.options.poll_interval,
            grace=self.ctx.options.kill_grace,
            on_timeout=on_timeout,
        )
        duration = time.monotonic() - start

        error: Optional[StepFailure] = None
        if seconds is not None and exit_code == TIMEOUT_EXIT_CODE:
            error = TimeoutFailure(self.job.name, step.name, step.run, format_duration(seconds))
        elif exit_code != 0:
            error = StepFailure(self.job.name, step.name, step.run, exit_code)
        if error is not None:
            self.failed = True
        self.console.print_step_result(self.job.name, step.name, exit_code, duration, attempts["n"])
        return StepResult(
            name=step.name,
            status="success" if exit_code == 0 else "failure",
            exit_code=exit_code,
            attempts=attempts["n"],
            duration=duration,
            error=error,
        )

    # ---- internals ----

    def _script(self, step: Step) -> str:
        prelude = step_prelude(self.executor.job_env_path(self.job.name), step.cwd)
        return prelude + "\n" + self.executor.step_body(self.job.name, step)

    def _run_once(self, step: Step, env: Dict[str, str], scope: TimeoutScope) -> int:
        if scope.expired:
            return TIMEOUT_EXIT_CODE

        launch = self.executor.launch(self.job.name, self._script(step), env)
        try:
            proc = subprocess.Popen(
                launch.argv,
                cwd=launch.cwd,
                env=launch.env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except FileNotFoundError as e:
            tool = launch.argv[0]
            raise SetupFailure(
                f"Cannot start step '{step.name}': {tool} not found",
                job=self.job.name,
                details={"hint": hint_for(tool), "error": str(e)},
            )

        scope.register(proc)
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                self.console.print_step_output(self.job.name, step.name, line)
            return proc.wait()
        finally:
            scope.unregister(proc)
            if proc.stdout is not None:
                proc.stdout.close()

    def _predicate(self, expr: str, env: Dict[str, str]) -> bool:
        """Raw step conditions run inside the job's execution context."""
        script = step_prelude(self.executor.job_env_path(self.job.name), strict=False)
        launch = self.executor.launch(self.job.name, script + "\n" + expr, env)
        proc = subprocess.run(
            launch.argv,
            cwd=launch.cwd,
            env=launch.env,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
        )
        return proc.returncode == 0
