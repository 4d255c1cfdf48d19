# executors/pod.py
"""
Kubernetes pod executor, driven through the kubectl CLI.

The execution image is built locally, tagged for the configured registry and
pushed. Then:

shared mode:    one pod per executor identity. The repository is copied once
                to /workspace/.golden and each job starts from its own copy
                at /workspace/jobs/<job>.
dedicated mode: one pod per job, job root /workspace, deleted when the job
                finishes.

The resolved job env is copied into the pod as a file and sourced before
every step, so job and provider values never appear on a command line. Only
step-level values that differ from the job env are exported inline in the
`kubectl exec` script.
"""
from __future__ import annotations

import hashlib
import json
import os
import re
import shlex
import tempfile
import threading
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Dict, List, Optional

from ..errors import ArtifactError, SetupFailure
from ..git_facts.git import source_root
from ..model import Job, Step
from ..steps import Launch
from .base import Executor
from .config import PodConfig
from .image import RUNTIME_PATH, DockerImageBuilder, ImageBuilder, ImageRef, step_invocation
from .local import snapshot_repo

if TYPE_CHECKING:
    from ..context import RunContext

POD_ROOT = "/workspace"
GOLDEN_DIR = f"{POD_ROOT}/.golden"
STATE_DIR = "/var/tmp/levelci"

_DNS_RE = re.compile(r"[^a-z0-9-]+")


def pod_name(*parts: str) -> str:
    """DNS-1123 label: lowercase alphanumerics and '-', at most 63 chars."""
    name = _DNS_RE.sub("-", "-".join(p for p in parts if p).lower()).strip("-")
    return name[:63].rstrip("-")


def export_lines(env: Dict[str, str]) -> str:
    return "".join(f"export {k}={shlex.quote(v)}\n" for k, v in sorted(env.items()))


class PodExecutor(Executor):
    config: PodConfig

    def __init__(
        self,
        config: PodConfig,
        ctx: "RunContext",
        image_builder: Optional[ImageBuilder] = None,
        kubectl: str = "kubectl",
        docker: str = "docker",
    ):
        super().__init__(config, ctx)
        self.image_builder = image_builder or DockerImageBuilder(console=ctx.console, docker=docker)
        self.kubectl = kubectl
        self.docker = docker
        self.image: Optional[ImageRef] = None
        self.run_tag = hashlib.sha256(ctx.run_id.encode("utf-8")).hexdigest()[:8]
        self.shared_pod: Optional[str] = None
        self._job_pods: Dict[str, str] = {}
        self._job_vars: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    @property
    def shared(self) -> bool:
        return self.config.mode == "shared"

    # ---- kubectl plumbing ----

    def kubectl_base(self) -> List[str]:
        argv = [self.kubectl]
        if self.config.kubeconfig_env and os.environ.get(self.config.kubeconfig_env):
            argv += ["--kubeconfig", os.environ[self.config.kubeconfig_env]]
        if self.config.context_env and os.environ.get(self.config.context_env):
            argv += ["--context", os.environ[self.config.context_env]]
        return argv + ["--namespace", self.config.namespace]

    def _kubectl(self, *args: str, job: Optional[str] = None, what: str = "kubectl command", check: bool = True, error=SetupFailure):
        return self._cli([*self.kubectl_base(), *args], job=job, what=what, check=check, error=error)

    def _exec(self, pod: str, *cmd: str, job: Optional[str] = None, what: str = "kubectl exec", check: bool = True):
        return self._kubectl("exec", pod, "--", *cmd, job=job, what=what, check=check)

    def _remote(self, pod: str, path: str) -> str:
        return f"{self.config.namespace}/{pod}:{path}"

    # ---- image ----

    def _credential(self, var: str) -> str:
        value = os.environ.get(var)
        if not value:
            raise SetupFailure(
                f"Registry credential {var} is not set",
                details={"registry": self.config.registry.url, "hint": f"export {var}=..."},
            )
        return value

    def publish_image(self) -> ImageRef:
        """Build locally, then tag and push to the registry."""
        registry = self.config.registry
        local = self.image_builder.build(self.name, self.config.base_image, self.bound_steps())
        remote = ImageRef(name=f"{registry.url.rstrip('/')}/{local.name}", tag=local.tag)

        user = self._credential(registry.username_env)
        password = self._credential(registry.password_env)
        self._cli([self.docker, "tag", local.ref, remote.ref], what="tag image")
        self._cli(
            [self.docker, "login", registry.url, "--username", user, "--password-stdin"],
            input=password,
            what=f"login to {registry.url}",
        )
        self.console.print_executor(self.name, f"pushing image {remote.ref}")
        self._cli([self.docker, "push", remote.ref], what="push image")
        return remote

    # ---- pods ----

    def _run_args(self, name: str) -> List[str]:
        assert self.image is not None, "image not published"
        labels = {"app.kubernetes.io/managed-by": "levelci", "levelci/run": self.run_tag}
        labels.update(dict(self.config.labels))
        argv = [
            "run",
            name,
            f"--image={self.image.ref}",
            "--restart=Never",
            "--labels=" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())),
        ]
        if self.config.service_account:
            argv.append("--overrides=" + json.dumps({"spec": {"serviceAccountName": self.config.service_account}}))
        return argv + ["--command", "--", "sleep", "infinity"]

    def create_pod(self, name: str, *, job: Optional[str] = None) -> str:
        self._kubectl(*self._run_args(name), job=job, what=f"create pod {name}")
        ready = self._kubectl(
            "wait",
            "--for=condition=Ready",
            f"pod/{name}",
            f"--timeout={self.config.pod_ready_timeout}s",
            job=job,
            check=False,
        )
        if ready.returncode != 0:
            logs = self._kubectl("logs", name, check=False)
            describe = self._kubectl("describe", "pod", name, check=False)
            self.delete_pod(name)
            raise SetupFailure(
                f"Pod {name} did not become ready within {self.config.pod_ready_timeout}s",
                job=job,
                details={
                    "logs": (logs.stdout or "").strip()[-1000:],
                    "describe": (describe.stdout or "").strip()[-2000:],
                },
            )
        self.console.print_executor(self.name, f"pod ready: {name}")
        return name

    def delete_pod(self, name: str) -> None:
        self._kubectl("delete", "pod", name, "--ignore-not-found", "--wait=false", what="delete pod", check=False)

    def _copy_repo(self, pod: str, dest: str, job: Optional[str] = None) -> None:
        src = Path(self.ctx.options.repo_root) if self.ctx.options.repo_root else source_root()
        with tempfile.TemporaryDirectory(prefix="levelci-repo-") as tmp:
            snapshot_repo(src, Path(tmp))
            self._kubectl("cp", f"{tmp}/.", self._remote(pod, dest), job=job, what="copy repository")

    # ---- workspace ----

    def _setup_workspace(self) -> None:
        self.image = self.publish_image()
        if not self.shared:
            return
        pod = self.create_pod(pod_name("lci", self.run_tag, self.name))
        self.shared_pod = pod
        self._exec(pod, "mkdir", "-p", GOLDEN_DIR, f"{POD_ROOT}/jobs", STATE_DIR, what="prepare workspace")
        if self.config.copy_repo:
            self._copy_repo(pod, GOLDEN_DIR)

    def _cleanup_workspace(self) -> None:
        with self._lock:
            leftovers = list(self._job_pods.values())
            self._job_pods.clear()
        for pod in leftovers:
            self.delete_pod(pod)
        if self.shared_pod is not None:
            if self.ctx.keep_workspace:
                self.console.print_executor(self.name, f"pod preserved: {self.shared_pod}")
            else:
                self.delete_pod(self.shared_pod)
                self.console.print_executor(self.name, f"pod deleted: {self.shared_pod}")
            self.shared_pod = None

    # ---- job ----

    def pod_for(self, job_name: str) -> str:
        if self.shared:
            assert self.shared_pod is not None, "workspace not initialized"
            return self.shared_pod
        with self._lock:
            return self._job_pods[job_name]

    def job_root(self, job_name: str) -> str:
        if self.shared:
            return f"{POD_ROOT}/jobs/{job_name}"
        return POD_ROOT

    def job_env_path(self, job_name: str) -> str:
        return f"{STATE_DIR}/{job_name}.env"

    def job_vars_path(self, job_name: str) -> str:
        return f"{STATE_DIR}/{job_name}.vars"

    def runtime_path(self) -> str:
        return RUNTIME_PATH

    def setup_job(self, job: Job) -> None:
        if self.shared:
            pod = self.pod_for(job.name)
            root = self.job_root(job.name)
            script = (
                f"mkdir -p {shlex.quote(root)} && "
                f"cp -a {GOLDEN_DIR}/. {shlex.quote(root)}/ && "
                f"touch {shlex.quote(self.job_env_path(job.name))}"
            )
            self._exec(pod, "sh", "-c", script, job=job.name, what="prepare job dir")
            return

        pod = self.create_pod(pod_name("lci", self.run_tag, self.name, job.name), job=job.name)
        with self._lock:
            self._job_pods[job.name] = pod
        self._exec(pod, "mkdir", "-p", POD_ROOT, STATE_DIR, job=job.name, what="prepare job dirs")
        self._exec(pod, "touch", self.job_env_path(job.name), job=job.name, what="create JOB_ENV")
        if self.config.copy_repo:
            self._copy_repo(pod, POD_ROOT, job=job.name)

    def cleanup_job(self, job: Job) -> None:
        with self._lock:
            self._job_vars.pop(job.name, None)
            pod = None if self.shared else self._job_pods.pop(job.name, None)
        if pod is not None:
            self.delete_pod(pod)

    def execute_job(self, job: Job, env: Dict[str, str]):
        pod = self.pod_for(job.name)
        with tempfile.NamedTemporaryFile("w", prefix="levelci-vars-", suffix=".sh", delete=False) as fh:
            fh.write(export_lines(env))
            local_path = fh.name
        try:
            self._kubectl("cp", local_path, self._remote(pod, self.job_vars_path(job.name)), job=job.name, what="copy job env")
        finally:
            os.unlink(local_path)
        with self._lock:
            self._job_vars[job.name] = dict(env)
        return super().execute_job(job, env)

    # ---- artifacts ----

    def save_artifact(self, job: Job, name: str, path: str) -> None:
        pod = self.pod_for(job.name)
        src = str(PurePosixPath(self.job_root(job.name)) / path)
        found = self._exec(pod, "test", "-e", src, job=job.name, check=False)
        if found.returncode != 0:
            raise ArtifactError(
                f"Path not found for artifact '{name}'",
                job=job.name,
                details={"artifact": name, "path": path},
            )
        target = self.ctx.artifacts.slot(name, path)
        self._kubectl("cp", self._remote(pod, src), str(target), job=job.name, what=f"save artifact {name}", error=ArtifactError)

    def restore_artifact(self, job: Job, name: str, path: str = ".") -> None:
        pod = self.pod_for(job.name)
        items = self.ctx.artifacts.items(name, job=job.name)
        dest = PurePosixPath(self.job_root(job.name)) / path
        self._exec(pod, "mkdir", "-p", str(dest), job=job.name, what="prepare restore dir")
        for item in items:
            self._kubectl(
                "cp",
                str(item),
                self._remote(pod, str(dest / item.name)),
                job=job.name,
                what=f"restore artifact {name}",
                error=ArtifactError,
            )

    # ---- steps ----

    def step_command(self, step: Step) -> str:
        return step_invocation(step)

    def launch(self, job_name: str, script: str, env: Dict[str, str]) -> Launch:
        with self._lock:
            job_vars = self._job_vars.get(job_name, {})
        # step-level values differ from the job env copied in execute_job
        extra = {k: v for k, v in env.items() if job_vars.get(k) != v}
        extra["JOB_ENV"] = self.job_env_path(job_name)
        vars_path = shlex.quote(self.job_vars_path(job_name))
        body = (
            f"[ -f {vars_path} ] && . {vars_path}\n"
            f"{export_lines(extra)}"
            f"cd {shlex.quote(self.job_root(job_name))}\n"
            f"{script}"
        )
        argv = [*self.kubectl_base(), "exec", self.pod_for(job_name), "--", "bash", "-c", body]
        return Launch(argv=argv)
