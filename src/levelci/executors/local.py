# executors/local.py
from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

from ..env import layer_env
from ..git_facts.git import source_root
from ..model import Job
from ..steps import Launch
from .base import Executor
from .config import LocalConfig
from .image import RUNTIME_SUPPORT

if TYPE_CHECKING:
    from ..context import RunContext

# VCS metadata and build outputs never make it into a job's repo snapshot
SNAPSHOT_EXCLUDES = (
    ".git",
    ".hg",
    ".svn",
    ".levelci",
    "__pycache__",
    "*.pyc",
    ".pytest_cache",
    ".mypy_cache",
    ".venv",
    "node_modules",
    "dist",
    "build",
    "result",
    "result-*",
)


def snapshot_repo(src: Path, dest: Path) -> None:
    """Copy the invoking repository into dest (which may already exist)."""
    patterns = shutil.ignore_patterns(*SNAPSHOT_EXCLUDES)
    dest_resolved = Path(dest).resolve()

    def ignore(directory, names):
        skipped = set(patterns(directory, names))
        # a workspace root inside the repo must not copy itself
        for name in names:
            if dest_resolved.is_relative_to((Path(directory) / name).resolve()):
                skipped.add(name)
        return skipped

    shutil.copytree(src, dest, symlinks=True, ignore=ignore, dirs_exist_ok=True)


class LocalExecutor(Executor):
    """
    Runs steps as child processes on the host.

    Workspace: one run-scoped temp dir.
      <workspace>/jobs/<job>/   job root, cwd of every step
      <workspace>/env/<job>.env $JOB_ENV
    """

    config: LocalConfig

    def __init__(self, config: LocalConfig, ctx: "RunContext"):
        super().__init__(config, ctx)
        self.workspace: Optional[Path] = None

    # ---- workspace ----

    def _setup_workspace(self) -> None:
        root = self.ctx.options.workspace_root
        if root:
            Path(root).mkdir(parents=True, exist_ok=True)
        self.workspace = Path(tempfile.mkdtemp(prefix=f"levelci-{self.name}-", dir=root))
        (self.workspace / "jobs").mkdir()
        (self.workspace / "env").mkdir()
        (self.workspace / "lib").mkdir()
        (self.workspace / "lib" / "runtime.sh").write_text(RUNTIME_SUPPORT, encoding="utf-8")
        self.console.print_executor(self.name, f"workspace created: {self.workspace}")

    def _cleanup_workspace(self) -> None:
        if self.workspace is None:
            return
        if self.ctx.keep_workspace:
            self.console.print_executor(self.name, f"workspace preserved: {self.workspace}")
            return
        self.console.print_executor(self.name, f"cleaning up workspace: {self.workspace}")
        shutil.rmtree(self.workspace, ignore_errors=True)
        self.workspace = None

    # ---- job ----

    def job_dir(self, job_name: str) -> Path:
        assert self.workspace is not None, "workspace not initialized"
        return self.workspace / "jobs" / job_name

    def job_env_path(self, job_name: str) -> str:
        assert self.workspace is not None, "workspace not initialized"
        return str(self.workspace / "env" / f"{job_name}.env")

    def runtime_path(self) -> str:
        assert self.workspace is not None, "workspace not initialized"
        return str(self.workspace / "lib" / "runtime.sh")

    def setup_job(self, job: Job) -> None:
        job_dir = self.job_dir(job.name)
        job_dir.mkdir(parents=True, exist_ok=True)
        if self.config.copy_repo:
            src = Path(self.ctx.options.repo_root) if self.ctx.options.repo_root else source_root()
            snapshot_repo(src, job_dir)
        Path(self.job_env_path(job.name)).touch()
        self.console.print_debug(f"{job.name}: workdir {job_dir}")

    def cleanup_job(self, job: Job) -> None:
        # job dirs go away with the workspace
        pass

    # ---- artifacts ----

    def save_artifact(self, job: Job, name: str, path: str) -> None:
        self.ctx.artifacts.save(name, self.job_dir(job.name), path, job=job.name)

    def restore_artifact(self, job: Job, name: str, path: str = ".") -> None:
        self.ctx.artifacts.restore(name, self.job_dir(job.name), path, job=job.name)

    # ---- steps ----

    def launch(self, job_name: str, script: str, env: Dict[str, str]) -> Launch:
        # host env is the lowest layer; declared values always win
        full_env = layer_env(os.environ, env, {"JOB_ENV": self.job_env_path(job_name)})
        return Launch(argv=["bash", "-c", script], cwd=str(self.job_dir(job_name)), env=full_env)
