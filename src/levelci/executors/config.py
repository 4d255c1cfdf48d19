# executors/config.py
"""
Executor configuration.

Configs are frozen dataclasses: two jobs whose configs compare equal share one
runtime instance (one workspace dir, one container, one pod). Giving a config
an explicit `name` is the way to force separate instances.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Optional, Tuple

CONTAINER_MODES = ("shared", "isolated")
POD_MODES = ("shared", "dedicated")


def _sanitize(s: str) -> str:
    for ch in "/:._ ":
        s = s.replace(ch, "-")
    return s.lower()


@dataclass(frozen=True)
class ExecutorConfig:
    kind = "executor"

    def identity(self) -> str:
        """Structural hash of the config; equal configs give equal identities."""
        payload = json.dumps({"kind": self.kind, **asdict(self)}, sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    @property
    def display_name(self) -> str:
        return self.kind


@dataclass(frozen=True)
class LocalConfig(ExecutorConfig):
    kind = "local"

    name: Optional[str] = None
    copy_repo: bool = True

    @property
    def display_name(self) -> str:
        return self.name or "local"


@dataclass(frozen=True)
class ContainerConfig(ExecutorConfig):
    kind = "container"

    image: str = "debian:bookworm-slim"
    mode: str = "shared"  # "shared" | "isolated"
    name: Optional[str] = None
    copy_repo: bool = True

    def __post_init__(self):
        if self.mode not in CONTAINER_MODES:
            raise ValueError(f"Container executor mode must be one of {CONTAINER_MODES}, got: {self.mode!r}")

    @property
    def display_name(self) -> str:
        return self.name or f"oci-{_sanitize(self.image)}-{self.mode}"


@dataclass(frozen=True)
class RegistryConfig:
    """Where pod images are pushed. Credentials are read from the named env vars."""
    url: str
    username_env: str
    password_env: str


@dataclass(frozen=True)
class PodConfig(ExecutorConfig):
    kind = "pod"

    registry: Optional[RegistryConfig] = None
    namespace: str = "default"
    mode: str = "shared"  # "shared" | "dedicated"
    name: Optional[str] = None
    base_image: str = "debian:bookworm-slim"
    copy_repo: bool = True
    kubeconfig_env: Optional[str] = None
    context_env: Optional[str] = None
    service_account: Optional[str] = None
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    pod_ready_timeout: int = 300

    def __post_init__(self):
        if self.registry is None or not self.registry.url:
            raise ValueError("Pod executor requires registry.url")
        if self.mode not in POD_MODES:
            raise ValueError(f"Pod executor mode must be one of {POD_MODES}, got: {self.mode!r}")
        if isinstance(self.labels, dict):
            # frozen dataclass: normalise the mapping into a hashable tuple
            object.__setattr__(self, "labels", tuple(sorted(self.labels.items())))

    @property
    def display_name(self) -> str:
        return self.name or "k8s"
