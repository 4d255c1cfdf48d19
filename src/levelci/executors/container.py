# executors/container.py
"""
OCI container executor, driven through the docker CLI.

shared mode:   one long-lived container per executor identity. A host temp
               dir is bind-mounted at /workspace; each job gets
               /workspace/jobs/<job>, so artifacts are plain host copies.
isolated mode: one container per job, job root /workspace. Artifacts move
               with `docker cp`.

Both modes run an image built from the base image plus every step bound to
this executor (see executors/image.py); steps are invoked by script path.
"""
from __future__ import annotations

import os
import re
import shutil
import tempfile
import threading
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Dict, List, Optional

from ..env import layer_env
from ..errors import ArtifactError, SetupFailure
from ..git_facts.git import source_root
from ..model import Job, Step
from ..steps import Launch
from .base import Executor
from .config import ContainerConfig
from .image import RUNTIME_PATH, DockerImageBuilder, ImageBuilder, ImageRef, step_invocation
from .local import snapshot_repo

if TYPE_CHECKING:
    from ..context import RunContext

CONTAINER_ROOT = "/workspace"
ISOLATED_ENV_DIR = "/var/tmp/levelci"

_NAME_RE = re.compile(r"[^a-zA-Z0-9_.-]+")


def container_name(*parts: str) -> str:
    return _NAME_RE.sub("-", "-".join(p for p in parts if p)).strip("-.").lower()


class ContainerExecutor(Executor):
    config: ContainerConfig

    def __init__(
        self,
        config: ContainerConfig,
        ctx: "RunContext",
        image_builder: Optional[ImageBuilder] = None,
        docker: str = "docker",
    ):
        super().__init__(config, ctx)
        self.image_builder = image_builder or DockerImageBuilder(console=ctx.console, docker=docker)
        self.docker = docker
        self.image: Optional[ImageRef] = None
        # shared mode
        self.host_dir: Optional[Path] = None
        self.container_id: Optional[str] = None
        # isolated mode: job name -> container id
        self._job_containers: Dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def shared(self) -> bool:
        return self.config.mode == "shared"

    # ---- docker plumbing ----

    def _docker(self, *args: str, job: Optional[str] = None, what: str = "docker command", check: bool = True, error=None):
        kwargs = {"job": job, "what": what, "check": check}
        if error is not None:
            kwargs["error"] = error
        return self._cli([self.docker, *args], **kwargs)

    def _start_container(self, name: str, *, mounts: Optional[List[str]] = None, job: Optional[str] = None) -> str:
        assert self.image is not None, "image not built"
        argv = ["create", "--name", name, "-w", CONTAINER_ROOT]
        for mount in mounts or []:
            argv += ["-v", mount]
        argv.append(self.image.ref)
        created = self._docker(*argv, job=job, what=f"create container {name}")
        cid = created.stdout.strip()
        try:
            self._docker("start", cid, job=job, what=f"start container {name}")
        except SetupFailure:
            self._remove_container(cid)
            raise
        self.console.print_executor(self.name, f"container started: {name} ({cid[:12]})")
        return cid

    def _remove_container(self, cid: str) -> None:
        self._docker("rm", "-f", cid, what="remove container", check=False)

    def _exec(self, cid: str, *cmd: str, job: Optional[str] = None, what: str = "docker exec", check: bool = True):
        return self._docker("exec", cid, *cmd, job=job, what=what, check=check)

    # ---- workspace ----

    def _setup_workspace(self) -> None:
        self.image = self.image_builder.build(self.name, self.config.image, self.bound_steps())
        if not self.shared:
            return
        root = self.ctx.options.workspace_root
        if root:
            Path(root).mkdir(parents=True, exist_ok=True)
        self.host_dir = Path(tempfile.mkdtemp(prefix=f"levelci-{self.name}-", dir=root))
        (self.host_dir / "jobs").mkdir()
        (self.host_dir / "env").mkdir()
        self.container_id = self._start_container(
            container_name("lci", self.ctx.run_id, self.name),
            mounts=[f"{self.host_dir}:{CONTAINER_ROOT}"],
        )

    def _cleanup_workspace(self) -> None:
        with self._lock:
            leftovers = list(self._job_containers.values())
            self._job_containers.clear()
        for cid in leftovers:
            self._remove_container(cid)

        if self.container_id is not None:
            if not self.ctx.keep_workspace:
                # files written by the container may not be removable from the host
                self._exec(self.container_id, "rm", "-rf", f"{CONTAINER_ROOT}/jobs", f"{CONTAINER_ROOT}/env", check=False)
            self._remove_container(self.container_id)
            self.console.print_executor(self.name, "container removed")
            self.container_id = None

        if self.host_dir is not None:
            if self.ctx.keep_workspace:
                self.console.print_executor(self.name, f"workspace preserved: {self.host_dir}")
            else:
                shutil.rmtree(self.host_dir, ignore_errors=True)
            self.host_dir = None

    # ---- job ----

    def job_root(self, job_name: str) -> str:
        """Job root inside the container."""
        if self.shared:
            return f"{CONTAINER_ROOT}/jobs/{job_name}"
        return CONTAINER_ROOT

    def host_job_dir(self, job_name: str) -> Path:
        assert self.host_dir is not None, "workspace not initialized"
        return self.host_dir / "jobs" / job_name

    def job_env_path(self, job_name: str) -> str:
        if self.shared:
            return f"{CONTAINER_ROOT}/env/{job_name}.env"
        return f"{ISOLATED_ENV_DIR}/{job_name}.env"

    def runtime_path(self) -> str:
        return RUNTIME_PATH

    def container_for(self, job_name: str) -> str:
        if self.shared:
            assert self.container_id is not None, "workspace not initialized"
            return self.container_id
        with self._lock:
            return self._job_containers[job_name]

    def _source(self) -> Path:
        return Path(self.ctx.options.repo_root) if self.ctx.options.repo_root else source_root()

    def setup_job(self, job: Job) -> None:
        if self.shared:
            job_dir = self.host_job_dir(job.name)
            job_dir.mkdir(parents=True, exist_ok=True)
            if self.config.copy_repo:
                snapshot_repo(self._source(), job_dir)
            (self.host_dir / "env" / f"{job.name}.env").touch()
            return

        cid = self._start_container(container_name("lci", self.ctx.run_id, self.name, job.name), job=job.name)
        with self._lock:
            self._job_containers[job.name] = cid
        self._exec(cid, "mkdir", "-p", ISOLATED_ENV_DIR, CONTAINER_ROOT, job=job.name, what="prepare job dirs")
        self._exec(cid, "touch", self.job_env_path(job.name), job=job.name, what="create JOB_ENV")
        if self.config.copy_repo:
            with tempfile.TemporaryDirectory(prefix="levelci-repo-") as tmp:
                snapshot_repo(self._source(), Path(tmp))
                self._docker("cp", f"{tmp}/.", f"{cid}:{CONTAINER_ROOT}", job=job.name, what="copy repository")

    def cleanup_job(self, job: Job) -> None:
        if self.shared:
            return
        with self._lock:
            cid = self._job_containers.pop(job.name, None)
        if cid is not None:
            self._remove_container(cid)

    # ---- artifacts ----

    def save_artifact(self, job: Job, name: str, path: str) -> None:
        if self.shared:
            self.ctx.artifacts.save(name, self.host_job_dir(job.name), path, job=job.name)
            return
        cid = self.container_for(job.name)
        src = str(PurePosixPath(self.job_root(job.name)) / path)
        found = self._exec(cid, "test", "-e", src, job=job.name, check=False)
        if found.returncode != 0:
            raise ArtifactError(
                f"Path not found for artifact '{name}'",
                job=job.name,
                details={"artifact": name, "path": path},
            )
        target = self.ctx.artifacts.slot(name, path)
        self._docker("cp", f"{cid}:{src}", str(target), job=job.name, what=f"save artifact {name}", error=ArtifactError)

    def restore_artifact(self, job: Job, name: str, path: str = ".") -> None:
        if self.shared:
            self.ctx.artifacts.restore(name, self.host_job_dir(job.name), path, job=job.name)
            return
        cid = self.container_for(job.name)
        items = self.ctx.artifacts.items(name, job=job.name)
        dest = PurePosixPath(self.job_root(job.name)) / path
        self._exec(cid, "mkdir", "-p", str(dest), job=job.name, what="prepare restore dir")
        for item in items:
            target = dest / item.name
            if item.is_dir():
                self._exec(cid, "mkdir", "-p", str(target), job=job.name, what="prepare restore dir")
                src = f"{item}/."
            else:
                src = str(item)
            self._docker("cp", src, f"{cid}:{target}", job=job.name, what=f"restore artifact {name}", error=ArtifactError)

    # ---- steps ----

    def step_command(self, step: Step) -> str:
        return step_invocation(step)

    def launch(self, job_name: str, script: str, env: Dict[str, str]) -> Launch:
        env = layer_env(env, {"JOB_ENV": self.job_env_path(job_name)})
        argv = [self.docker, "exec", "-w", self.job_root(job_name)]
        # names only: values travel through the client env, not the command line
        for key in sorted(env):
            argv += ["-e", key]
        argv += [self.container_for(job_name), "bash", "-c", script]
        return Launch(argv=argv, env=layer_env(os.environ, env))
