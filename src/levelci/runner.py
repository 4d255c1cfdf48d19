# runner.py
from __future__ import annotations

import runpy
import signal
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .artifacts import ArtifactStore
from .context import RunContext, RunOptions, make_run_id
from .dag import validate
from .env import apply_providers
from .executors.image import ImageBuilder
from .executors.pool import ExecutorPool
from .git_facts.git import commit_or_none
from .model import Job, JobStatus, Workflow
from .scheduler import JobOutcome, LevelScheduler
from .state import RunState
from .ui.console import Console, get_console


# ----------------------------------------------------------------------
# Workflow loading
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow
      - WORKFLOW = Workflow(...)

    A plain list of jobs is accepted too and named after the file.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"levelci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            loaded = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from levelci import wf, job, sh` then "
                    "`def workflow(): return wf('name', job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        loaded = globals_dict["WORKFLOW"]

    if isinstance(loaded, list) and all(isinstance(j, Job) for j in loaded):
        loaded = Workflow(name=wf_path.stem, jobs=loaded)
    if not isinstance(loaded, Workflow):
        raise TypeError(
            "Workflow file must return/define a Workflow. "
            "Define workflow() -> Workflow or WORKFLOW = wf('name', job(...), ...)."
        )
    return loaded


# ----------------------------------------------------------------------
# Driver
# ----------------------------------------------------------------------

@dataclass
class RunResult:
    workflow: str
    run_id: str
    statuses: Dict[str, JobStatus]
    failed: List[str]
    outcomes: Dict[str, JobOutcome] = field(default_factory=dict)
    cancelled: bool = False
    artifacts_dir: Optional[Path] = None
    # jobs whose failure is tolerated via continue_on_error
    tolerated: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.cancelled and all(name in self.tolerated for name in self.failed)

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 130
        return 0 if self.success else 1


class _Interrupts:
    """SIGINT/SIGTERM mark the run cancelled; running jobs finish on their own."""

    def __init__(self, state: RunState, console: Console):
        self.state = state
        self.console = console
        self._previous = {}

    def _handler(self, signum, frame):
        if not self.state.cancelled:
            self.console.print_info(f"\nReceived signal {signum}, cancelling: running jobs finish, nothing new starts")
        self.state.cancel()

    def __enter__(self):
        # handlers can only be installed from the main thread
        if threading.current_thread() is threading.main_thread():
            for sig in (signal.SIGINT, signal.SIGTERM):
                self._previous[sig] = signal.signal(sig, self._handler)
        return self

    def __exit__(self, *exc):
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)
        self._previous.clear()
        return False


def run_workflow(
    workflow: Workflow,
    options: Optional[RunOptions] = None,
    console: Optional[Console] = None,
    image_builder: Optional[ImageBuilder] = None,
    state: Optional[RunState] = None,
) -> RunResult:
    """
    Validate, then run every level of the workflow.

    Raises ValidationError (before anything runs) for a malformed graph or a
    missing required variable; every later problem is recorded per job.
    """
    options = options or RunOptions()
    console = console or get_console()

    levels = validate(workflow)
    provided_env = apply_providers(workflow.env_providers)

    run_id = make_run_id(workflow.name)
    state = state or RunState(j.name for j in workflow.jobs)
    artifacts = ArtifactStore(options.resolved_artifacts_dir(run_id))
    ctx = RunContext(
        run_id=run_id,
        workflow=workflow,
        state=state,
        artifacts=artifacts,
        options=options,
        console=console,
        provided_env=provided_env,
        commit=commit_or_none(options.repo_root),
    )

    console.print_run_started(workflow.name, run_id, len(workflow.jobs), levels)
    console.print_debug(f"artifacts: {artifacts.root}")

    pool = ExecutorPool(ctx, image_builder=image_builder)
    pool.reserve(workflow.jobs)
    scheduler = LevelScheduler(ctx, pool, levels)
    try:
        with _Interrupts(state, console):
            scheduler.run()
    finally:
        pool.close()

    statuses = state.statuses()
    failed = state.failed_jobs
    reasons = {name: o.error for name, o in scheduler.outcomes.items() if o.error}
    console.print_results({name: status.value for name, status in statuses.items()}, failed, reasons)

    return RunResult(
        workflow=workflow.name,
        run_id=run_id,
        statuses=statuses,
        failed=failed,
        outcomes=dict(scheduler.outcomes),
        cancelled=state.cancelled,
        artifacts_dir=artifacts.root,
        tolerated=[j.name for j in workflow.jobs if j.continue_on_error],
    )
