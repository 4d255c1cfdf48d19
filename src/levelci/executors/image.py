# executors/image.py
"""
Execution images for the container and pod executors.

An image is the base image plus:
  /opt/levelci/lib/runtime.sh    runtime support sourced before every step
  /opt/levelci/steps/<name>.sh   one script per step, invoked by path

Images are tagged with a content hash of (base image, runtime, step scripts),
so an unchanged set of steps reuses the previous build.
"""
from __future__ import annotations

import abc
import hashlib
import re
import shlex
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..errors import SetupFailure, hint_for
from ..model import Step
from ..ui.console import Console, get_console

RUNTIME_DIR = "/opt/levelci/lib"
STEPS_DIR = "/opt/levelci/steps"
RUNTIME_PATH = f"{RUNTIME_DIR}/runtime.sh"

RUNTIME_SUPPORT = """\
# levelci runtime support, sourced before every step

# levelci_export NAME VALUE
# Export NAME=VALUE now and for every following step of this job.
levelci_export() {
  if [ $# -ne 2 ]; then
    echo "usage: levelci_export NAME VALUE" >&2
    return 2
  fi
  export "$1=$2"
  if [ -n "${JOB_ENV:-}" ]; then
    printf '%s=%q\\n' "$1" "$2" >> "$JOB_ENV"
  fi
}

# levelci_log MESSAGE...
levelci_log() {
  echo "[levelci] $*" >&2
}
"""

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def step_script_name(step: Step) -> str:
    """Unique per content: two steps with one name but different code never collide."""
    slug = _SLUG_RE.sub("-", step.name.lower()).strip("-") or "step"
    digest = hashlib.sha256(step.run.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}.sh"


def image_name(executor_name: str) -> str:
    """Repository name for an executor's image; docker only accepts lowercase."""
    return "levelci-" + (_SLUG_RE.sub("-", executor_name.lower()).strip("-") or "executor")


def step_script_path(step: Step) -> str:
    return f"{STEPS_DIR}/{step_script_name(step)}"


def step_invocation(step: Step) -> str:
    """Body the step runner executes inside the container/pod for this step."""
    return f". {shlex.quote(step_script_path(step))}"


@dataclass(frozen=True)
class ImageRef:
    name: str
    tag: str

    @property
    def ref(self) -> str:
        return f"{self.name}:{self.tag}"


class ImageBuilder(abc.ABC):
    """Turns a set of steps into a runnable image; the scheduler never sees how."""

    @staticmethod
    def content_hash(base_image: str, steps: Iterable[Step]) -> str:
        scripts = sorted({step_script_name(s): s.run for s in steps}.items())
        h = hashlib.sha256()
        h.update(base_image.encode("utf-8"))
        h.update(RUNTIME_SUPPORT.encode("utf-8"))
        for name, body in scripts:
            h.update(name.encode("utf-8"))
            h.update(b"\0")
            h.update(body.encode("utf-8"))
        return h.hexdigest()[:16]

    @abc.abstractmethod
    def build(self, executor_name: str, base_image: str, steps: Iterable[Step]) -> ImageRef: ...


def render_context(dest: Path, base_image: str, steps: Iterable[Step]) -> Path:
    """Write a docker build context (Dockerfile, runtime, step scripts) into dest."""
    steps_dir = dest / "steps"
    steps_dir.mkdir(parents=True, exist_ok=True)
    (dest / "runtime.sh").write_text(RUNTIME_SUPPORT, encoding="utf-8")

    for step in steps:
        script = steps_dir / step_script_name(step)
        script.write_text(f"# step: {step.name}\n{step.run}\n", encoding="utf-8")
        script.chmod(0o755)

    (dest / "Dockerfile").write_text(
        "\n".join(
            [
                f"FROM {base_image}",
                f"COPY runtime.sh {RUNTIME_PATH}",
                f"COPY steps/ {STEPS_DIR}/",
                "WORKDIR /workspace",
                'CMD ["sleep", "infinity"]',
                "",
            ]
        ),
        encoding="utf-8",
    )
    return dest


class DockerImageBuilder(ImageBuilder):
    """Builds images with `docker build`, caching by content hash."""

    def __init__(self, console: Optional[Console] = None, docker: str = "docker"):
        self.console = console or get_console()
        self.docker = docker
        self._cache: Dict[str, ImageRef] = {}
        self._lock = threading.Lock()

    def _run(self, argv: List[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(argv, capture_output=True, text=True)
        except FileNotFoundError:
            raise SetupFailure(f"{argv[0]} is not available", details={"hint": hint_for(argv[0])})

    def build(self, executor_name: str, base_image: str, steps: Iterable[Step]) -> ImageRef:
        steps = list(steps)
        digest = self.content_hash(base_image, steps)
        image = ImageRef(name=image_name(executor_name), tag=digest)

        with self._lock:
            if digest in self._cache:
                return self._cache[digest]

            inspect = self._run([self.docker, "image", "inspect", image.ref])
            if inspect.returncode == 0:
                self.console.print_executor(executor_name, f"reusing image {image.ref}")
                self._cache[digest] = image
                return image

            self.console.print_executor(executor_name, f"building image {image.ref} ({len(steps)} step scripts)")
            with tempfile.TemporaryDirectory(prefix="levelci-image-") as tmp:
                context = render_context(Path(tmp), base_image, steps)
                proc = self._run([self.docker, "build", "-t", image.ref, str(context)])
            if proc.returncode != 0:
                raise SetupFailure(
                    f"image build failed for executor {executor_name}",
                    details={"image": image.ref, "stderr": (proc.stderr or "").strip()[-2000:]},
                )
            self._cache[digest] = image
            return image
