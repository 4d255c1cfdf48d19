# executors/base.py
"""
Executor lifecycle contract.

Call order in a run, per executor identity:

    setup_workspace()                      once, lazily, shared by all its jobs
      for each job bound to it:
        setup_job(job)
        restore_artifact(job, name, path)*   declared inputs
        execute_job(job, env)                step runner over the ordered steps
        save_artifact(job, name, path)*      declared outputs, only if no step failed
        cleanup_job(job)                     always
    cleanup_workspace()                    once, always

Workspace-level resources (temp dir, long-lived container, shared pod) belong
to setup/cleanup_workspace; job-level ones (job dir, isolated container,
dedicated pod) to setup/cleanup_job.
"""
from __future__ import annotations

import abc
import os
import shlex
import subprocess
import threading
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from ..env import layer_env, resolve_job_env
from ..errors import SetupFailure, hint_for
from ..model import Job, Step
from ..steps import JobRunResult, Launch, StepRunner
from .config import ExecutorConfig

if TYPE_CHECKING:
    from ..context import RunContext


class Executor(abc.ABC):
    def __init__(self, config: ExecutorConfig, ctx: "RunContext"):
        self.config = config
        self.ctx = ctx
        self.name = config.display_name
        self.console = ctx.console
        self._ws_lock = threading.Lock()
        self._ws_ready = False
        # jobs run on this executor, in start order
        self.jobs_seen: List[str] = []

    # ---- workspace level ----

    def setup_workspace(self) -> None:
        """Idempotent; safe to call from every job that shares this executor."""
        with self._ws_lock:
            if self._ws_ready:
                return
            try:
                self._setup_workspace()
            except BaseException:
                # release whatever was created before the failure
                self._abort_workspace()
                raise
            self._ws_ready = True

    def cleanup_workspace(self) -> None:
        with self._ws_lock:
            if not self._ws_ready:
                return
            try:
                self._cleanup_workspace()
            finally:
                self._ws_ready = False

    def _abort_workspace(self) -> None:
        try:
            self._cleanup_workspace()
        except Exception as e:
            self.console.print_warning(f"{self.name}: cleanup after failed setup: {e}")

    @property
    def workspace_ready(self) -> bool:
        return self._ws_ready

    @abc.abstractmethod
    def _setup_workspace(self) -> None: ...

    @abc.abstractmethod
    def _cleanup_workspace(self) -> None: ...

    # ---- job level ----

    @abc.abstractmethod
    def setup_job(self, job: Job) -> None: ...

    @abc.abstractmethod
    def cleanup_job(self, job: Job) -> None: ...

    @abc.abstractmethod
    def restore_artifact(self, job: Job, name: str, path: str = ".") -> None: ...

    @abc.abstractmethod
    def save_artifact(self, job: Job, name: str, path: str) -> None: ...

    def execute_job(self, job: Job, env: Dict[str, str]) -> JobRunResult:
        return StepRunner(self, self.ctx, job, env).run()

    # ---- step launching (used by the step runner) ----

    @abc.abstractmethod
    def launch(self, job_name: str, script: str, env: Dict[str, str]) -> Launch:
        """argv (+ host cwd/env) that runs `script` with bash inside the job context."""

    @abc.abstractmethod
    def job_env_path(self, job_name: str) -> str:
        """Path of the job's $JOB_ENV file as seen by the steps."""

    @abc.abstractmethod
    def runtime_path(self) -> str:
        """Where the runtime support script lives, as seen by the steps."""

    def step_command(self, step: Step) -> str:
        return step.run

    def step_body(self, job_name: str, step: Step) -> str:
        return f". {shlex.quote(self.runtime_path())}\n{self.step_command(step)}"

    # ---- whole job ----

    def bound_jobs(self) -> List[Job]:
        """Jobs of the workflow that resolve to this executor identity."""
        key = self.config.identity()
        return [j for j in self.ctx.workflow.jobs if j.executor.identity() == key]

    def bound_steps(self) -> List[Step]:
        return [s for j in self.bound_jobs() for s in j.steps]

    def resolve_env(self, job: Job) -> Dict[str, str]:
        env = resolve_job_env(self.ctx.provided_env, job.env_providers, self.ctx.workflow.env, job.env)
        return layer_env(self.ctx.builtin_env(), {"JOB_NAME": job.name}, env)

    def run_job(self, job: Job) -> JobRunResult:
        """Drive one job through the job-level part of the lifecycle."""
        self.setup_workspace()
        try:
            self.jobs_seen.append(job.name)
            env = self.resolve_env(job)
            self.setup_job(job)
            for inp in job.artifact_inputs:
                self.restore_artifact(job, inp.name, inp.path)
                self.console.print_artifact(job.name, "restored", inp.name, inp.path)

            result = self.execute_job(job, env)

            if not result.failed:
                for name, path in job.outputs.items():
                    self.save_artifact(job, name, path)
                    self.console.print_artifact(job.name, "saved", name, path)
            return result
        finally:
            self.cleanup_job(job)

    # ---- helpers for CLI-driven backends ----

    def _cli(
        self,
        argv: Sequence[str],
        *,
        job: Optional[str] = None,
        what: str = "command",
        input: Optional[str] = None,
        check: bool = True,
        error=SetupFailure,
    ) -> subprocess.CompletedProcess:
        """Run a docker/kubectl command, turning failures into structured errors."""
        self.console.print_debug(f"{self.name}: {' '.join(argv)}")
        try:
            proc = subprocess.run(
                list(argv),
                input=input,
                capture_output=True,
                text=True,
                env=os.environ.copy(),
            )
        except FileNotFoundError:
            raise error(
                f"{argv[0]} is not available",
                job=job,
                details={"hint": hint_for(argv[0])},
            )
        if check and proc.returncode != 0:
            raise error(
                f"{what} failed (exit={proc.returncode})",
                job=job,
                details={"cmd": " ".join(argv), "stderr": (proc.stderr or "").strip()[-2000:]},
            )
        return proc
