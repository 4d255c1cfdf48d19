# context.py
from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .artifacts import ArtifactStore
from .model import RetryPolicy, Workflow
from .state import RunState
from .ui.console import Console, get_console


def make_run_id(workflow_name: str) -> str:
    return f"{workflow_name}-{int(time.time())}-{os.getpid()}"


@dataclass
class RunOptions:
    """
    Knobs for one run. Unset values fall back to LEVELCI_* env vars, then defaults.
    """
    artifacts_dir: Optional[str] = None
    workspace_root: Optional[str] = None
    repo_root: Optional[str] = None
    keep_workspace: Optional[bool] = None
    max_workers: Optional[int] = None
    poll_interval: float = 1.0
    kill_grace: float = 1.0

    def resolved_keep_workspace(self) -> bool:
        if self.keep_workspace is not None:
            return self.keep_workspace
        return os.environ.get("LEVELCI_KEEP_WORKSPACE", "") == "1"

    def resolved_artifacts_dir(self, run_id: str) -> Path:
        if self.artifacts_dir:
            return Path(self.artifacts_dir)
        env_dir = os.environ.get("LEVELCI_ARTIFACTS_DIR")
        if env_dir:
            return Path(env_dir)
        return Path(".levelci") / "artifacts" / run_id


@dataclass
class RunContext:
    """Everything an executor needs from the run it takes part in."""
    run_id: str
    workflow: Workflow
    state: RunState
    artifacts: ArtifactStore
    options: RunOptions = field(default_factory=RunOptions)
    console: Console = field(default_factory=get_console)
    # workflow-level providers already applied
    provided_env: Dict[str, str] = field(default_factory=dict)
    commit: Optional[str] = None

    @property
    def workflow_retry(self) -> Optional[RetryPolicy]:
        return self.workflow.retry

    @property
    def workflow_timeout(self) -> Optional[str]:
        return self.workflow.timeout

    @property
    def keep_workspace(self) -> bool:
        return self.options.resolved_keep_workspace()

    def builtin_env(self) -> Dict[str, str]:
        """Vars every step sees, lowest priority."""
        env = {
            "CI": "true",
            "WORKFLOW_NAME": self.workflow.name,
            "WORKFLOW_ID": self.run_id,
        }
        if self.commit:
            env["LEVELCI_COMMIT"] = self.commit
        return env
