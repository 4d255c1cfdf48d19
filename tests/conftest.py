# tests/conftest.py
from __future__ import annotations

import io
import subprocess

import pytest

from levelci.artifacts import ArtifactStore
from levelci.context import RunContext, RunOptions
from levelci.errors import SetupFailure
from levelci.executors.image import ImageRef
from levelci.runner import run_workflow
from levelci.state import RunState
from levelci.ui.console import Console


@pytest.fixture
def console():
    """Console writing into in-memory buffers; read them with .getvalue()."""
    out, err = io.StringIO(), io.StringIO()
    c = Console(debug=True, stream=out, err_stream=err)
    c.out = out
    c.err = err
    return c


@pytest.fixture
def repo(tmp_path):
    """A tiny source tree standing in for the invoking repository."""
    root = tmp_path / "repo"
    root.mkdir()
    (root / "README.md").write_text("hello\n")
    (root / "src").mkdir()
    (root / "src" / "main.sh").write_text("echo main\n")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return root


@pytest.fixture
def options(tmp_path, repo):
    return RunOptions(
        artifacts_dir=str(tmp_path / "artifacts"),
        workspace_root=str(tmp_path / "ws"),
        repo_root=str(repo),
        keep_workspace=False,
        poll_interval=0.05,
        kill_grace=0.2,
    )


@pytest.fixture
def make_ctx(tmp_path, options, console):
    def _make(workflow, **overrides):
        opts = overrides.pop("options", options)
        return RunContext(
            run_id=f"{workflow.name}-1-1",
            workflow=workflow,
            state=RunState(j.name for j in workflow.jobs),
            artifacts=ArtifactStore(opts.artifacts_dir),
            options=opts,
            console=console,
            **overrides,
        )
    return _make


@pytest.fixture
def run(options, console):
    """Run a workflow end to end with test options and the captured console."""
    def _run(workflow, **kwargs):
        return run_workflow(workflow, options=kwargs.pop("options", options), console=console, **kwargs)
    return _run


class FakeCLI:
    """
    Stands in for Executor._cli: records every docker/kubectl call and
    answers from `responses`, a list of (predicate(argv), CompletedProcess
    kwargs) checked in order.
    """

    def __init__(self):
        self.calls = []
        self.inputs = []
        self.responses = []

    def on(self, predicate, returncode=0, stdout="", stderr="", effect=None):
        self.responses.append((predicate, dict(returncode=returncode, stdout=stdout, stderr=stderr), effect))

    def __call__(self, argv, *, job=None, what="command", input=None, check=True, error=None):
        argv = list(argv)
        self.calls.append(argv)
        self.inputs.append(input)
        result = dict(returncode=0, stdout="", stderr="")
        for predicate, answer, effect in self.responses:
            if predicate(argv):
                result = answer
                if effect is not None:
                    effect(argv)
                break
        if check and result["returncode"] != 0:
            raise (error or SetupFailure)(f"{what} failed (exit={result['returncode']})", job=job)
        return subprocess.CompletedProcess(argv, **result)

    def find(self, *words):
        """Calls containing all of `words`, in order of appearance."""
        return [c for c in self.calls if all(w in c for w in words)]


@pytest.fixture
def fake_cli():
    return FakeCLI()


class FakeImageBuilder:
    def __init__(self):
        self.builds = []

    def build(self, executor_name, base_image, steps):
        steps = list(steps)
        self.builds.append((executor_name, base_image, [s.name for s in steps]))
        return ImageRef(name=f"levelci-{executor_name}", tag="abc123")


@pytest.fixture
def image_builder():
    return FakeImageBuilder()
