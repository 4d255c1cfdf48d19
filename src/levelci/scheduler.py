# scheduler.py
"""
Level-synchronized scheduler.

Each level's jobs run concurrently on a thread pool; the next level starts
only after every job of the current one is terminal. A failing job without
continue_on_error stops the run after its level.
"""
from __future__ import annotations

import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .conditions import evaluate, run_shell_predicate
from .context import RunContext
from .env import layer_env
from .errors import CIError
from .executors.pool import ExecutorPool
from .model import Job, JobStatus


@dataclass
class JobOutcome:
    name: str
    status: JobStatus
    duration: float = 0.0
    error: Optional[str] = None
    # CIError kind of the first failure: step_failure, timeout_failure, setup_failure, ...
    kind: Optional[str] = None
    failed_steps: List[str] = field(default_factory=list)

    @property
    def timed_out(self) -> bool:
        return self.kind == "timeout_failure"


class LevelScheduler:
    def __init__(self, ctx: RunContext, pool: ExecutorPool, levels: List[List[str]]):
        self.ctx = ctx
        self.pool = pool
        self.levels = levels
        self.console = ctx.console
        self.jobs: Dict[str, Job] = {j.name: j for j in ctx.workflow.jobs}
        self.outcomes: Dict[str, JobOutcome] = {}
        # index of the level that stopped the run, if any
        self.stopped_at: Optional[int] = None

    # ---- conditions ----

    def _host_env(self) -> Dict[str, str]:
        return layer_env(os.environ, self.ctx.builtin_env(), self.ctx.provided_env, self.ctx.workflow.env)

    def should_run(self, job: Job) -> bool:
        """Job conditions see the failed set of the whole run so far."""
        return evaluate(
            job.condition,
            failed=self.ctx.state.any_failed,
            cancelled=self.ctx.state.cancelled,
            predicate=lambda expr: run_shell_predicate(expr, env=self._host_env()),
        )

    # ---- one job ----

    def skip(self, job: Job) -> JobOutcome:
        self.ctx.state.mark_skipped(job.name)
        self.pool.release(job.executor)
        reason = "cancelled" if self.ctx.state.cancelled else f"condition: {job.condition}"
        self.console.print_job_skipped(job.name, reason)
        return JobOutcome(name=job.name, status=JobStatus.SKIPPED)

    def run_job(self, job: Job) -> JobOutcome:
        start = time.monotonic()
        self.ctx.state.mark_running(job.name)
        try:
            executor = self.pool.acquire(job.executor)
            self.console.print_job_start(job.name, executor.name)
            result = executor.run_job(job)
        except CIError as e:
            self.ctx.state.mark_failure(job.name)
            self.console.print_job_failure(job.name, str(e), job.continue_on_error)
            return JobOutcome(job.name, JobStatus.FAILURE, time.monotonic() - start, error=str(e), kind=e.kind)
        except Exception as e:
            self.ctx.state.mark_failure(job.name)
            self.console.print_job_failure(job.name, f"{type(e).__name__}: {e}", job.continue_on_error)
            if self.console.debug:
                self.console.print_exception(e)
            return JobOutcome(job.name, JobStatus.FAILURE, time.monotonic() - start, error=str(e))
        finally:
            self.pool.release(job.executor)

        duration = time.monotonic() - start
        if result.failed:
            errors = result.errors
            self.ctx.state.mark_failure(job.name)
            reason = "; ".join(e.message for e in errors) or "failed"
            self.console.print_job_failure(job.name, reason, job.continue_on_error)
            return JobOutcome(
                job.name,
                JobStatus.FAILURE,
                duration,
                error=reason,
                kind=errors[0].kind if errors else "step_failure",
                failed_steps=result.failed_steps,
            )

        if result.interrupted_steps:
            # the run was cancelled before this job could finish its steps
            self.ctx.state.mark_failure(job.name)
            reason = f"cancelled before steps: {', '.join(result.interrupted_steps)}"
            self.console.print_job_failure(job.name, reason, job.continue_on_error)
            return JobOutcome(job.name, JobStatus.FAILURE, duration, error=reason, kind="cancelled")

        self.ctx.state.mark_success(job.name)
        self.console.print_job_success(job.name, duration)
        return JobOutcome(job.name, JobStatus.SUCCESS, duration)

    # ---- levels ----

    def run_level(self, index: int, names: List[str]) -> List[JobOutcome]:
        self.console.print_level(index, names)
        outcomes: List[JobOutcome] = []
        to_run: List[Job] = []
        # conditions are decided before any job of the level starts
        for name in names:
            job = self.jobs[name]
            if self.should_run(job):
                to_run.append(job)
            else:
                outcomes.append(self.skip(job))

        if to_run:
            workers = self.ctx.options.max_workers or len(to_run)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"level{index}") as pool:
                futures = {pool.submit(self.run_job, job): job.name for job in to_run}
                for future in as_completed(futures):
                    outcomes.append(future.result())

        for outcome in outcomes:
            self.outcomes[outcome.name] = outcome
        return outcomes

    def run(self) -> bool:
        """Run every level; False when a level failed and stopped the run."""
        for index, names in enumerate(self.levels):
            outcomes = self.run_level(index, names)
            blocking = [
                o.name
                for o in outcomes
                if o.status is JobStatus.FAILURE and not self.jobs[o.name].continue_on_error
            ]
            if blocking:
                self.stopped_at = index
                self.console.print_level_failed(index, blocking)
                self._release_unstarted(index + 1)
                return False
        return True

    def _release_unstarted(self, first_level: int) -> None:
        for names in self.levels[first_level:]:
            for name in names:
                self.pool.release(self.jobs[name].executor)
