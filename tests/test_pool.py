# tests/test_pool.py
from levelci.dsl import job, sh, wf
from levelci.executors.config import ContainerConfig, LocalConfig
from levelci.executors.local import LocalExecutor
from levelci.executors.pool import ExecutorPool


def _pool(make_ctx, image_builder, *jobs):
    ctx = make_ctx(wf("ci", *jobs))
    return ExecutorPool(ctx, image_builder=image_builder)


def test_identical_configs_share_an_instance(make_ctx, image_builder):
    pool = _pool(make_ctx, image_builder, job("a", sh("s", "true")))
    assert pool.acquire(LocalConfig()) is pool.acquire(LocalConfig())
    assert pool.acquire(LocalConfig()) is not pool.acquire(LocalConfig(name="other"))
    assert pool.acquire(ContainerConfig(image="node:20")) is pool.acquire(ContainerConfig(image="node:20"))
    assert pool.acquire(ContainerConfig(image="node:20")) is not pool.acquire(
        ContainerConfig(image="node:20", mode="isolated")
    )


def test_identity_is_structural():
    assert LocalConfig().identity() == LocalConfig().identity()
    assert LocalConfig().identity() != LocalConfig(copy_repo=False).identity()
    assert ContainerConfig().display_name == "oci-debian-bookworm-slim-shared"
    assert ContainerConfig(name="builder").display_name == "builder"


def test_last_release_tears_the_workspace_down(make_ctx, image_builder):
    a, b = job("a", sh("s", "true")), job("b", sh("s", "true"))
    pool = _pool(make_ctx, image_builder, a, b)
    pool.reserve([a, b])
    executor = pool.acquire(a.executor)
    assert isinstance(executor, LocalExecutor)
    executor.setup_workspace()
    workspace = executor.workspace

    pool.release(a.executor)
    assert executor.workspace_ready
    pool.release(b.executor)
    assert not executor.workspace_ready
    assert not workspace.exists()


def test_close_reports_cleanup_errors_without_raising(make_ctx, image_builder, console):
    pool = _pool(make_ctx, image_builder, job("a", sh("s", "true")))
    executor = pool.acquire(LocalConfig())
    executor.setup_workspace()

    def broken():
        raise OSError("device busy")

    executor._cleanup_workspace = broken
    pool.close()
    assert "device busy" in console.err.getvalue()
