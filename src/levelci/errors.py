# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

TIMEOUT_EXIT_CODE = 124


TOOL_HINTS = {
    "bash": "Install bash or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "kubectl": "Install kubectl and point it at a cluster (KUBECONFIG).",
    "git": "Install Git or fix PATH.",
}


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the final run summary
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ValidationError(CIError):
    """Workflow graph or configuration is invalid. Raised before any job runs."""

    def __init__(self, message: str, *, job: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(kind="validation_error", message=message, job=job, details=details or {})


class SetupFailure(CIError):
    """Executor workspace/job provisioning failed. Fatal for the job, never retried."""

    def __init__(self, message: str, *, job: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(kind="setup_failure", message=message, job=job, details=details or {})


class ArtifactError(CIError):
    """Artifact missing at restore time, or declared path missing at save time."""

    def __init__(self, message: str, *, job: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(kind="artifact_error", message=message, job=job, details=details or {})


class StepFailure(CIError):
    def __init__(self, job: str, step: str, cmd: str, exit_code: int):
        super().__init__(
            kind="step_failure",
            message=f"step '{step}' failed (exit={exit_code})",
            job=job,
            step=step,
            details={"cmd": cmd},
        )
        self.exit_code = exit_code


class TimeoutFailure(StepFailure):
    def __init__(self, job: str, step: str, cmd: str, limit: str):
        super().__init__(job=job, step=step, cmd=cmd, exit_code=TIMEOUT_EXIT_CODE)
        self.kind = "timeout_failure"
        self.message = f"step '{step}' timed out after {limit}"
        self.details["timeout"] = limit


def hint_for(tool: str) -> str:
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
