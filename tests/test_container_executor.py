# tests/test_container_executor.py
from pathlib import Path

import pytest

from levelci.dsl import job, sh, wf
from levelci.errors import ArtifactError, SetupFailure
from levelci.executors.config import ContainerConfig
from levelci.executors.container import ContainerExecutor, container_name
from levelci.executors.image import RUNTIME_PATH, step_script_path
from levelci.steps import JobRunResult

SHARED = ContainerConfig(image="node:20")
ISOLATED = ContainerConfig(image="node:20", mode="isolated")


@pytest.fixture
def make_executor(make_ctx, fake_cli, image_builder):
    def _make(config, *jobs):
        ctx = make_ctx(wf("ci", *jobs))
        executor = ContainerExecutor(config, ctx, image_builder=image_builder)
        executor._cli = fake_cli
        return executor
    return _make


def _creates(suffix):
    return lambda argv: argv[1] == "create" and argv[3].endswith(suffix)


def test_container_name_is_docker_safe():
    assert container_name("lci", "My Flow-1-2", "oci-node-20-shared") == "lci-my-flow-1-2-oci-node-20-shared"


def test_shared_workspace_starts_one_container(make_executor, fake_cli, image_builder):
    build = job("build", sh("compile", "make"), executor=SHARED)
    test = job("test", sh("unit", "make test"), executor=SHARED)
    other = job("lint", sh("lint", "make lint"), executor=ContainerConfig(image="python:3.12"))
    fake_cli.on(lambda a: a[1] == "create", stdout="cid-shared\n")
    executor = make_executor(SHARED, build, test, other)

    executor.setup_workspace()
    executor.setup_workspace()

    # the image carries exactly the steps bound to this executor identity
    assert image_builder.builds == [("oci-node-20-shared", "node:20", ["compile", "unit"])]
    creates = fake_cli.find("create")
    assert len(creates) == 1
    assert f"{executor.host_dir}:/workspace" in creates[0]
    assert creates[0][-1] == "levelci-oci-node-20-shared:abc123"
    assert fake_cli.find("start", "cid-shared")
    assert executor.container_id == "cid-shared"


def test_shared_job_dir_lives_on_the_mount(make_executor, fake_cli):
    build = job("build", sh("compile", "make"), executor=SHARED)
    fake_cli.on(lambda a: a[1] == "create", stdout="cid-shared\n")
    executor = make_executor(SHARED, build)
    executor.setup_workspace()
    executor.setup_job(build)

    host_job = executor.host_job_dir("build")
    assert (host_job / "README.md").exists()
    assert not (host_job / ".git").exists()
    assert (executor.host_dir / "env" / "build.env").exists()
    assert executor.job_root("build") == "/workspace/jobs/build"
    assert executor.job_env_path("build") == "/workspace/env/build.env"


def test_launch_passes_env_by_name_only(make_executor, fake_cli):
    build = job("build", sh("compile", "make"), executor=SHARED)
    fake_cli.on(lambda a: a[1] == "create", stdout="cid-shared\n")
    executor = make_executor(SHARED, build)
    executor.setup_workspace()

    launch = executor.launch("build", "echo hi", {"TOKEN": "s3cret", "MODE": "ci"})
    assert launch.argv[:4] == ["docker", "exec", "-w", "/workspace/jobs/build"]
    assert launch.argv[-4:] == ["cid-shared", "bash", "-c", "echo hi"]
    assert ["-e", "TOKEN"] == launch.argv[launch.argv.index("TOKEN") - 1: launch.argv.index("TOKEN") + 1]
    assert "s3cret" not in " ".join(launch.argv)
    assert launch.env["TOKEN"] == "s3cret"
    assert launch.env["JOB_ENV"] == "/workspace/env/build.env"


def test_steps_are_invoked_from_the_image(make_executor):
    step = sh("compile", "make all")
    executor = make_executor(SHARED, job("build", step, executor=SHARED))
    body = executor.step_body("build", step)
    assert body.splitlines() == [f". {RUNTIME_PATH}", f". {step_script_path(step)}"]


def test_shared_artifacts_are_host_copies(make_executor, fake_cli, options):
    build = job("build", sh("compile", "make"), executor=SHARED, outputs={"dist": "dist"})
    deploy = job("deploy", sh("ship", "true"), executor=SHARED, needs=["build"], inputs=["dist"])
    fake_cli.on(lambda a: a[1] == "create", stdout="cid-shared\n")
    executor = make_executor(SHARED, build, deploy)
    executor.setup_workspace()
    executor.setup_job(build)
    (executor.host_job_dir("build") / "dist").mkdir()
    (executor.host_job_dir("build") / "dist" / "app.js").write_text("x")

    executor.save_artifact(build, "dist", "dist")
    executor.setup_job(deploy)
    executor.restore_artifact(deploy, "dist", "pub")

    assert (Path(options.artifacts_dir) / "dist" / "dist" / "app.js").exists()
    assert (executor.host_job_dir("deploy") / "pub" / "dist" / "app.js").read_text() == "x"


def test_shared_cleanup_removes_container_and_dir(make_executor, fake_cli):
    fake_cli.on(lambda a: a[1] == "create", stdout="cid-shared\n")
    executor = make_executor(SHARED, job("build", sh("compile", "make"), executor=SHARED))
    executor.setup_workspace()
    host_dir = executor.host_dir

    executor.cleanup_workspace()

    assert fake_cli.find("exec", "cid-shared", "rm", "-rf")
    assert fake_cli.find("rm", "-f", "cid-shared")
    assert not host_dir.exists()
    assert not executor.workspace_ready


def test_isolated_mode_uses_a_container_per_job(make_executor, fake_cli):
    a = job("a", sh("one", "true"), executor=ISOLATED)
    b = job("b", sh("two", "true"), executor=ISOLATED)
    fake_cli.on(_creates("-a"), stdout="cid-a\n")
    fake_cli.on(_creates("-b"), stdout="cid-b\n")
    executor = make_executor(ISOLATED, a, b)

    executor.setup_workspace()
    assert fake_cli.find("create") == []

    executor.setup_job(a)
    executor.setup_job(b)
    assert executor.container_for("a") == "cid-a"
    assert executor.container_for("b") == "cid-b"
    assert executor.job_root("a") == "/workspace"
    assert executor.job_env_path("a") == "/var/tmp/levelci/a.env"
    assert fake_cli.find("exec", "cid-a", "touch", "/var/tmp/levelci/a.env")
    copies = fake_cli.find("cp", "cid-a:/workspace")
    assert len(copies) == 1 and copies[0][2].endswith("/.")

    executor.cleanup_job(a)
    assert fake_cli.find("rm", "-f", "cid-a")
    assert not fake_cli.find("rm", "-f", "cid-b")


def test_isolated_save_copies_out_of_the_container(make_executor, fake_cli, options):
    build = job("build", sh("compile", "make"), executor=ISOLATED, outputs={"dist": "dist"})

    def copy_out(argv):
        target = Path(argv[-1])
        target.mkdir(parents=True)
        (target / "app.js").write_text("built")

    fake_cli.on(lambda a: a[1] == "create", stdout="cid-build\n")
    fake_cli.on(lambda a: a[1] == "cp" and a[2] == "cid-build:/workspace/dist", effect=copy_out)
    executor = make_executor(ISOLATED, build)
    executor.setup_workspace()
    executor.setup_job(build)

    executor.save_artifact(build, "dist", "dist")
    assert fake_cli.find("exec", "cid-build", "test", "-e", "/workspace/dist")
    assert (Path(options.artifacts_dir) / "dist" / "dist" / "app.js").read_text() == "built"


def test_isolated_save_of_missing_path(make_executor, fake_cli):
    build = job("build", sh("compile", "make"), executor=ISOLATED, outputs={"dist": "dist"})
    fake_cli.on(lambda a: a[1] == "create", stdout="cid-build\n")
    fake_cli.on(lambda a: "test" in a and "-e" in a, returncode=1)
    executor = make_executor(ISOLATED, build)
    executor.setup_workspace()
    executor.setup_job(build)
    with pytest.raises(ArtifactError, match="Path not found"):
        executor.save_artifact(build, "dist", "dist")


def test_isolated_restore_copies_each_item(make_executor, fake_cli):
    deploy = job("deploy", sh("ship", "true"), executor=ISOLATED, inputs=["dist"])
    fake_cli.on(lambda a: a[1] == "create", stdout="cid-deploy\n")
    executor = make_executor(ISOLATED, deploy)
    slot = executor.ctx.artifacts.slot("dist", "dist")
    slot.mkdir()
    (slot / "app.js").write_text("x")
    executor.setup_workspace()
    executor.setup_job(deploy)

    executor.restore_artifact(deploy, "dist", "pub")

    assert fake_cli.find("exec", "cid-deploy", "mkdir", "-p", "/workspace/pub")
    assert fake_cli.find("exec", "cid-deploy", "mkdir", "-p", "/workspace/pub/dist")
    copy = fake_cli.find("cp", "cid-deploy:/workspace/pub/dist")
    assert copy and copy[0][2] == f"{slot}/."


def test_run_job_lifecycle_order(make_executor, fake_cli, monkeypatch):
    build = job("build", sh("compile", "make"), executor=ISOLATED)
    fake_cli.on(lambda a: a[1] == "create", stdout="cid-build\n")
    executor = make_executor(ISOLATED, build)
    seen = []
    monkeypatch.setattr(executor, "execute_job", lambda j, env: seen.append(env) or JobRunResult(job=j.name))

    result = executor.run_job(build)

    assert not result.failed
    assert seen[0]["JOB_NAME"] == "build"
    verbs = [c[1] for c in fake_cli.calls]
    assert verbs.index("create") < verbs.index("start") < verbs.index("rm")
    assert executor.jobs_seen == ["build"]


def test_failed_start_removes_created_container(make_executor, fake_cli):
    build = job("build", sh("compile", "make"), executor=SHARED)
    fake_cli.on(lambda a: a[1] == "create", stdout="cid-shared\n")
    fake_cli.on(lambda a: a[1] == "start", returncode=1)
    executor = make_executor(SHARED, build)

    with pytest.raises(SetupFailure):
        executor.setup_workspace()

    assert fake_cli.find("rm", "-f", "cid-shared")
    assert executor.host_dir is None
    assert not executor.workspace_ready


def test_failed_workspace_setup_leaves_no_host_dir(make_executor, fake_cli, options):
    build = job("build", sh("compile", "make"), executor=SHARED)
    fake_cli.on(lambda a: a[1] == "create", returncode=1)
    executor = make_executor(SHARED, build)

    with pytest.raises(SetupFailure):
        executor.setup_workspace()

    assert list(Path(options.workspace_root).glob("levelci-*")) == []
