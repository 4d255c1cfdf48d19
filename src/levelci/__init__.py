from .dsl import job, sh, retry, inp, matrix, wf, JobBuilder, build
from .env import FileProvider, RequiredProvider, StaticProvider
from .executors.config import ContainerConfig, LocalConfig, PodConfig, RegistryConfig
from .model import ArtifactInput, Job, RetryPolicy, Step, Workflow
from .runner import load_workflow, run_workflow

__all__ = [
    "job", "sh", "retry", "inp", "matrix", "wf", "JobBuilder", "build",
    "FileProvider", "RequiredProvider", "StaticProvider",
    "ContainerConfig", "LocalConfig", "PodConfig", "RegistryConfig",
    "ArtifactInput", "Job", "RetryPolicy", "Step", "Workflow",
    "load_workflow", "run_workflow",
]
