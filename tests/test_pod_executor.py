# tests/test_pod_executor.py
import json

import pytest

from levelci.dsl import job, sh, wf
from levelci.errors import SetupFailure
from levelci.executors.base import Executor
from levelci.executors.config import PodConfig, RegistryConfig
from levelci.executors.pod import PodExecutor, pod_name
from levelci.steps import JobRunResult

REGISTRY = RegistryConfig(url="registry.example.com/ci", username_env="LCI_REG_USER", password_env="LCI_REG_PASS")
SHARED = PodConfig(registry=REGISTRY, namespace="ci")
DEDICATED = PodConfig(registry=REGISTRY, namespace="ci", mode="dedicated")


@pytest.fixture(autouse=True)
def registry_credentials(monkeypatch):
    monkeypatch.setenv("LCI_REG_USER", "robot")
    monkeypatch.setenv("LCI_REG_PASS", "hunter2")


@pytest.fixture
def make_executor(make_ctx, fake_cli, image_builder):
    def _make(config, *jobs):
        ctx = make_ctx(wf("ci", *jobs))
        executor = PodExecutor(config, ctx, image_builder=image_builder)
        executor._cli = fake_cli
        return executor
    return _make


def test_pod_names_are_dns_labels():
    name = pod_name("lci", "abcd1234", "K8s_Runner", "Some.Job/Name" * 10)
    assert len(name) <= 63
    assert name == name.lower()
    assert not name.endswith("-")
    assert all(c.isalnum() or c == "-" for c in name)


def test_config_requires_registry():
    with pytest.raises(ValueError):
        PodConfig()
    with pytest.raises(ValueError):
        PodConfig(registry=REGISTRY, mode="isolated")


def test_labels_accept_a_mapping():
    config = PodConfig(registry=REGISTRY, labels={"team": "web", "app": "shop"})
    assert config.labels == (("app", "shop"), ("team", "web"))
    assert config.identity() == PodConfig(registry=REGISTRY, labels={"app": "shop", "team": "web"}).identity()


def test_image_is_tagged_and_pushed(make_executor, fake_cli):
    executor = make_executor(SHARED, job("build", sh("compile", "make"), executor=SHARED))

    image = executor.publish_image()

    assert image.ref == "registry.example.com/ci/levelci-k8s:abc123"
    assert fake_cli.find("docker", "tag", "levelci-k8s:abc123", image.ref)
    login = fake_cli.find("docker", "login")[0]
    assert "--password-stdin" in login and "hunter2" not in login
    assert fake_cli.inputs[fake_cli.calls.index(login)] == "hunter2"
    assert fake_cli.find("docker", "push", image.ref)


def test_missing_registry_credentials(make_executor, monkeypatch):
    monkeypatch.delenv("LCI_REG_PASS")
    executor = make_executor(SHARED, job("build", sh("compile", "make"), executor=SHARED))
    with pytest.raises(SetupFailure, match="LCI_REG_PASS"):
        executor.publish_image()


def test_shared_workspace_creates_one_pod_with_golden_copy(make_executor, fake_cli):
    executor = make_executor(SHARED, job("build", sh("compile", "make"), executor=SHARED))
    executor.setup_workspace()

    runs = fake_cli.find("run")
    assert len(runs) == 1
    run = runs[0]
    assert run[:3] == ["kubectl", "--namespace", "ci"]
    assert "--image=registry.example.com/ci/levelci-k8s:abc123" in run
    assert "--restart=Never" in run
    assert run[-3:] == ["--", "sleep", "infinity"]
    assert any(a.startswith("--labels=") and "levelci/run=" in a for a in run)

    pod = executor.shared_pod
    assert fake_cli.find("wait", "--for=condition=Ready", f"pod/{pod}", "--timeout=300s")
    assert fake_cli.find("exec", pod, "mkdir", "-p", "/workspace/.golden")
    copy = fake_cli.find("cp", f"ci/{pod}:/workspace/.golden")
    assert copy and copy[0][-2].endswith("/.")


def test_kubeconfig_and_context_come_from_env(make_ctx, fake_cli, image_builder, monkeypatch):
    monkeypatch.setenv("LCI_KUBECONFIG", "/tmp/kc")
    monkeypatch.setenv("LCI_CONTEXT", "staging")
    config = PodConfig(registry=REGISTRY, kubeconfig_env="LCI_KUBECONFIG", context_env="LCI_CONTEXT")
    executor = PodExecutor(config, make_ctx(wf("ci", job("a", sh("s", "true"), executor=config))), image_builder=image_builder)
    assert executor.kubectl_base() == [
        "kubectl", "--kubeconfig", "/tmp/kc", "--context", "staging", "--namespace", "default",
    ]


def test_service_account_goes_through_overrides(make_executor, fake_cli):
    config = PodConfig(registry=REGISTRY, service_account="deployer")
    executor = make_executor(config, job("build", sh("compile", "make"), executor=config))
    executor.setup_workspace()
    run = fake_cli.find("run")[0]
    overrides = [a for a in run if a.startswith("--overrides=")]
    assert json.loads(overrides[0].split("=", 1)[1]) == {"spec": {"serviceAccountName": "deployer"}}


def test_pod_not_ready_is_a_setup_failure(make_executor, fake_cli):
    fake_cli.on(lambda a: "wait" in a, returncode=1)
    fake_cli.on(lambda a: "logs" in a, stdout="ImagePullBackOff")
    executor = make_executor(SHARED, job("build", sh("compile", "make"), executor=SHARED))

    with pytest.raises(SetupFailure) as exc:
        executor.setup_workspace()

    assert "did not become ready" in exc.value.message
    assert exc.value.details["logs"] == "ImagePullBackOff"
    assert fake_cli.find("describe", "pod")
    assert fake_cli.find("delete", "pod", "--ignore-not-found")
    assert not executor.workspace_ready


def test_shared_job_starts_from_the_golden_copy(make_executor, fake_cli):
    build = job("build", sh("compile", "make"), executor=SHARED)
    executor = make_executor(SHARED, build)
    executor.setup_workspace()
    executor.setup_job(build)

    script = fake_cli.find("exec", "sh", "-c")[0][-1]
    assert "cp -a /workspace/.golden/. /workspace/jobs/build/" in script
    assert "touch /var/tmp/levelci/build.env" in script
    assert executor.job_root("build") == "/workspace/jobs/build"


def test_dedicated_mode_creates_and_deletes_a_pod_per_job(make_executor, fake_cli):
    a = job("a", sh("one", "true"), executor=DEDICATED)
    b = job("b", sh("two", "true"), executor=DEDICATED)
    executor = make_executor(DEDICATED, a, b)
    executor.setup_workspace()
    assert fake_cli.find("run") == []

    executor.setup_job(a)
    executor.setup_job(b)
    pod_a, pod_b = executor.pod_for("a"), executor.pod_for("b")
    assert pod_a != pod_b
    assert len(fake_cli.find("run")) == 2
    assert executor.job_root("a") == "/workspace"
    assert fake_cli.find("cp", f"ci/{pod_a}:/workspace")

    executor.cleanup_job(a)
    assert fake_cli.find("delete", "pod", pod_a)
    assert not fake_cli.find("delete", "pod", pod_b)

    executor.cleanup_workspace()
    assert fake_cli.find("delete", "pod", pod_b)


def test_job_env_travels_as_a_file(make_executor, fake_cli, monkeypatch):
    build = job("build", sh("compile", "make"), executor=SHARED, env={"TOKEN": "s3cret"})
    executor = make_executor(SHARED, build)
    monkeypatch.setattr(Executor, "execute_job", lambda self, j, env: JobRunResult(job=j.name))
    executor.setup_workspace()
    executor.setup_job(build)

    executor.execute_job(build, {"TOKEN": "s3cret", "MODE": "ci"})
    pod = executor.shared_pod
    assert fake_cli.find("cp", f"ci/{pod}:/var/tmp/levelci/build.vars")

    launch = executor.launch("build", "make", {"TOKEN": "s3cret", "MODE": "release"})
    body = launch.argv[-1]
    assert launch.argv[-3:-1] == ["bash", "-c"]
    assert "s3cret" not in body
    assert "export MODE=release" in body
    assert "export JOB_ENV=/var/tmp/levelci/build.env" in body
    assert "cd /workspace/jobs/build" in body
    assert body.endswith("make")


def test_cleanup_deletes_the_shared_pod_unless_kept(make_executor, fake_cli, options):
    executor = make_executor(SHARED, job("build", sh("compile", "make"), executor=SHARED))
    executor.setup_workspace()
    pod = executor.shared_pod
    executor.cleanup_workspace()
    assert fake_cli.find("delete", "pod", pod)

    options.keep_workspace = True
    fake_cli.calls.clear()
    executor.setup_workspace()
    executor.cleanup_workspace()
    assert not fake_cli.find("delete")


def test_failed_shared_workspace_setup_deletes_the_pod(make_executor, fake_cli):
    executor = make_executor(SHARED, job("build", sh("compile", "make"), executor=SHARED))
    fake_cli.on(lambda a: "exec" in a and "mkdir" in a, returncode=1)

    with pytest.raises(SetupFailure):
        executor.setup_workspace()

    pod = fake_cli.find("run")[0][fake_cli.find("run")[0].index("run") + 1]
    assert fake_cli.find("delete", "pod", pod)
    assert executor.shared_pod is None
    assert not executor.workspace_ready

    # a later job retries setup from scratch
    fake_cli.responses.clear()
    executor.setup_workspace()
    assert executor.workspace_ready
    assert len(fake_cli.find("run")) == 2
