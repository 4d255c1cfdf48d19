# env.py
"""
Environment providers and layering.

A provider yields flat name=value pairs. Providers are applied in order, later
ones overriding earlier ones; static job vars override providers and static
step vars override everything:

    host env (local executor only)
      < workflow providers < job providers
      < workflow env < job env < step env
"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import ValidationError

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LINE_RE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")


def _check_name(name: str) -> None:
    if not _NAME_RE.match(name):
        raise ValidationError(
            f"Invalid environment variable name: {name!r} (must match [A-Za-z_][A-Za-z0-9_]*)"
        )


class EnvProvider:
    """Base class: `provide(current)` returns the pairs this provider contributes."""

    name = "provider"

    def provide(self, current: Mapping[str, str]) -> Dict[str, str]:
        raise NotImplementedError


class StaticProvider(EnvProvider):
    name = "static"

    def __init__(self, values: Mapping[str, object]):
        for k in values:
            _check_name(k)
        self.values = {k: str(v) for k, v in values.items()}

    def provide(self, current: Mapping[str, str]) -> Dict[str, str]:
        return dict(self.values)


class FileProvider(EnvProvider):
    """
    Load KEY=VALUE pairs from a dotenv-style file.

    Blank lines and `#` comments are skipped; an optional `export ` prefix and
    surrounding single/double quotes are stripped. A missing file is an error
    only when `required=True`.
    """

    name = "file"

    def __init__(self, path: str | Path, *, required: bool = False):
        self.path = Path(path)
        self.required = required

    def provide(self, current: Mapping[str, str]) -> Dict[str, str]:
        if not self.path.is_file():
            if self.required:
                raise ValidationError(f"Required env file not found: {self.path}")
            return {}
        return parse_env_lines(self.path.read_text(encoding="utf-8").splitlines())


class RequiredProvider(EnvProvider):
    """Validates that variables are present; contributes nothing."""

    name = "required"

    def __init__(self, names: Iterable[str]):
        self.names = list(names)
        for n in self.names:
            _check_name(n)

    def provide(self, current: Mapping[str, str]) -> Dict[str, str]:
        missing = [n for n in self.names if n not in current and n not in os.environ]
        if missing:
            raise ValidationError(
                "Required environment variables not set",
                details={"missing": ", ".join(missing)},
            )
        return {}


def parse_env_lines(lines: Iterable[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in lines:
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        m = _LINE_RE.match(line)
        if not m:
            continue
        key, value = m.group(1), m.group(2).strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        out[key] = value
    return out


def apply_providers(providers: Iterable[EnvProvider], base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Run providers in order over `base`; later providers win."""
    env: Dict[str, str] = dict(base or {})
    for p in providers:
        env.update(p.provide(env))
    return env


def layer_env(*layers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Merge env maps left to right; later layers always override."""
    out: Dict[str, str] = {}
    for layer in layers:
        if layer:
            out.update({k: str(v) for k, v in layer.items()})
    return out


def resolve_job_env(
    provided: Mapping[str, str],
    job_providers: List[EnvProvider],
    workflow_env: Mapping[str, str],
    job_env: Mapping[str, str],
) -> Dict[str, str]:
    """
    Env for one job, without step vars and without the host environment.

    `provided` is the result of the workflow-level providers.
    """
    env = apply_providers(job_providers, provided)
    return layer_env(env, workflow_env, job_env)
