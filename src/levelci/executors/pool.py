# executors/pool.py
from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from ..model import Job
from .base import Executor
from .config import ContainerConfig, ExecutorConfig, LocalConfig, PodConfig
from .container import ContainerExecutor
from .image import DockerImageBuilder, ImageBuilder
from .local import LocalExecutor
from .pod import PodExecutor

if TYPE_CHECKING:
    from ..context import RunContext


def make_executor(config: ExecutorConfig, ctx: "RunContext", image_builder: Optional[ImageBuilder] = None) -> Executor:
    if isinstance(config, LocalConfig):
        return LocalExecutor(config, ctx)
    if isinstance(config, ContainerConfig):
        return ContainerExecutor(config, ctx, image_builder=image_builder)
    if isinstance(config, PodConfig):
        return PodExecutor(config, ctx, image_builder=image_builder)
    raise TypeError(f"Unknown executor config: {type(config).__name__}")


class ExecutorPool:
    """
    One executor instance per structural config identity, reference counted
    by the jobs that still need it.

    `reserve()` registers every job up front; each job `release()`s its
    executor once finished (or skipped). The last release tears the workspace
    down; `close()` tears down whatever is left, at run end.
    """

    def __init__(self, ctx: "RunContext", image_builder: Optional[ImageBuilder] = None, factory=make_executor):
        self.ctx = ctx
        self.image_builder = image_builder or DockerImageBuilder(console=ctx.console)
        self._factory = factory
        self._lock = threading.Lock()
        self._executors: Dict[str, Executor] = {}
        self._refs: Dict[str, int] = {}

    def reserve(self, jobs: Iterable[Job]) -> None:
        with self._lock:
            for job in jobs:
                key = job.executor.identity()
                self._refs[key] = self._refs.get(key, 0) + 1

    def acquire(self, config: ExecutorConfig) -> Executor:
        key = config.identity()
        with self._lock:
            executor = self._executors.get(key)
            if executor is None:
                executor = self._factory(config, self.ctx, self.image_builder)
                self._executors[key] = executor
            return executor

    def release(self, config: ExecutorConfig) -> None:
        key = config.identity()
        with self._lock:
            self._refs[key] = self._refs.get(key, 0) - 1
            done = self._refs[key] <= 0
            executor = self._executors.get(key) if done else None
        if executor is not None:
            self._teardown(executor)

    def executors(self) -> List[Executor]:
        with self._lock:
            return list(self._executors.values())

    def close(self) -> None:
        for executor in self.executors():
            self._teardown(executor)

    def _teardown(self, executor: Executor) -> None:
        if not executor.workspace_ready:
            return
        try:
            executor.cleanup_workspace()
        except Exception as e:
            # teardown problems must not mask the run result
            self.ctx.console.print_error(
                "Workspace cleanup failed",
                f"executor {executor.name}: {e}",
            )
