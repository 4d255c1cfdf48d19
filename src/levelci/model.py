# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from .env import EnvProvider
from .executors.config import ExecutorConfig, LocalConfig


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.SKIPPED)


BACKOFF_KINDS = ("exponential", "linear", "constant")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry settings for a step.

    Fields left as None fall through to the next lower level
    (step > job > workflow > built-in default) when policies are merged.
    """
    max_attempts: Optional[int] = None
    backoff: Optional[str] = None
    min_delay: Optional[float] = None
    max_delay: Optional[float] = None


@dataclass(frozen=True)
class ArtifactInput:
    """An artifact a job restores before its steps run."""
    name: str
    path: str = "."


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    condition: str = "success()"
    retry: Optional[RetryPolicy] = None
    timeout: Optional[str] = None


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + where/how they run.

    `outputs` maps artifact name -> path relative to the job root.
    `inputs` lists artifacts restored before the steps run.
    """
    name: str
    steps: list[Step]

    needs: list[str] = field(default_factory=list)
    executor: ExecutorConfig = field(default_factory=LocalConfig)

    env: Dict[str, str] = field(default_factory=dict)
    env_providers: list[EnvProvider] = field(default_factory=list)

    outputs: Dict[str, str] = field(default_factory=dict)
    inputs: list[Union[ArtifactInput, str]] = field(default_factory=list)

    condition: str = "success()"
    continue_on_error: bool = False
    retry: Optional[RetryPolicy] = None
    timeout: Optional[str] = None

    @property
    def artifact_inputs(self) -> List[ArtifactInput]:
        return [i if isinstance(i, ArtifactInput) else ArtifactInput(name=i) for i in self.inputs]


@dataclass
class Workflow:
    """A named set of jobs plus workflow-wide env and defaults."""
    name: str
    jobs: list[Job]

    env: Dict[str, str] = field(default_factory=dict)
    env_providers: list[EnvProvider] = field(default_factory=list)
    retry: Optional[RetryPolicy] = None
    timeout: Optional[str] = None

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)
