# src/levelci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .env import EnvProvider
from .executors.config import ExecutorConfig, LocalConfig
from .model import ArtifactInput, Job, RetryPolicy, Step, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    condition: str = "success()",
    retry: Optional[RetryPolicy] = None,
    timeout: Optional[str] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        condition=condition,
        retry=retry,
        timeout=timeout,
    )


def retry(
    max_attempts: int,
    *,
    backoff: str = "exponential",
    min_delay: float = 1,
    max_delay: float = 60,
) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, backoff=backoff, min_delay=min_delay, max_delay=max_delay)


def inp(name: str, path: str = ".") -> ArtifactInput:
    """Restore artifact `name` into `path` (relative to the job root)."""
    return ArtifactInput(name=name, path=path)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    executor: Optional[ExecutorConfig] = None,
    env: Optional[Dict[str, Any]] = None,
    env_providers: Optional[List[EnvProvider]] = None,
    outputs: Optional[Dict[str, str]] = None,
    inputs: Optional[List[Union[ArtifactInput, str]]] = None,
    condition: str = "success()",
    continue_on_error: bool = False,
    retry: Optional[RetryPolicy] = None,
    timeout: Optional[str] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        executor=executor or LocalConfig(),
        env={k: str(v) for k, v in (env or {}).items()},
        env_providers=list(env_providers or []),
        outputs=dict(outputs or {}),
        inputs=list(inputs or []),
        condition=condition,
        continue_on_error=continue_on_error,
        retry=retry,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._executor: ExecutorConfig = LocalConfig()
        self._env: dict[str, str] = {}
        self._providers: list[EnvProvider] = []
        self._outputs: dict[str, str] = {}
        self._inputs: list[ArtifactInput] = []
        self._condition = "success()"
        self._continue_on_error = False
        self._retry: Optional[RetryPolicy] = None
        self._timeout: Optional[str] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, executor: ExecutorConfig):
        self._executor = executor
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_providers(self, *providers: EnvProvider):
        self._providers.extend(providers)
        return self

    def produces(self, name: str, path: str):
        self._outputs[name] = path
        return self

    def consumes(self, name: str, path: str = "."):
        self._inputs.append(ArtifactInput(name=name, path=path))
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def allow_failure(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def with_retry(self, policy: RetryPolicy):
        self._retry = policy
        return self

    def with_timeout(self, duration: str):
        self._timeout = duration
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            executor=self._executor,
            env=dict(self._env),
            env_providers=list(self._providers),
            outputs=dict(self._outputs),
            inputs=list(self._inputs),
            condition=self._condition,
            continue_on_error=self._continue_on_error,
            retry=self._retry,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.10","3.11"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Union[Job, List[Job]],
    env: Optional[Dict[str, Any]] = None,
    env_providers: Optional[List[EnvProvider]] = None,
    retry: Optional[RetryPolicy] = None,
    timeout: Optional[str] = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf("ci", job(...), job(...)).

    Matrix expansions (lists of jobs) are flattened in place.
    """
    flat: List[Job] = []
    for item in jobs:
        if isinstance(item, list):
            flat.extend(item)
        else:
            flat.append(item)
    return Workflow(
        name=name,
        jobs=flat,
        env={k: str(v) for k, v in (env or {}).items()},
        env_providers=list(env_providers or []),
        retry=retry,
        timeout=timeout,
    )
