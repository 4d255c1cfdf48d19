# artifacts.py
"""
Host-side artifact store.

    root/
      <artifact name>/
        <declared relative path>     e.g. dist/app.js

Producers save through `save()` (local executor) or by copying into
`slot()` (container/pod executors); consumers restore everything under
`root/<name>/` into `<job root>/<path>`, merging into existing files.
"""
from __future__ import annotations

import shutil
from pathlib import Path, PurePosixPath
from typing import List, Optional

from .errors import ArtifactError, ValidationError


def check_relative(path: str, what: str = "artifact path") -> str:
    """Normalise a job-relative path; reject absolute paths and `..` escapes."""
    p = PurePosixPath(path)
    if p.is_absolute() or ".." in p.parts:
        raise ValidationError(f"Invalid {what} {path!r}: must be relative to the job root and stay inside it")
    return str(p)


def copy_any(src: Path, dest: Path) -> None:
    """Copy a file or a directory tree to dest, merging into an existing tree."""
    if src.is_dir():
        shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
    else:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)


class ArtifactStore:
    """File-based artifact store keyed by artifact name."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        return self.root / name

    def slot(self, name: str, rel_path: str) -> Path:
        """
        Reset the artifact dir and return where the content of `rel_path`
        must be written (parent dirs created).
        """
        base = self.path_for(name)
        if base.exists():
            shutil.rmtree(base)
        target = base / check_relative(rel_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        return target

    def save(self, name: str, src_root: str | Path, rel_path: str, *, job: Optional[str] = None) -> Path:
        src = Path(src_root) / check_relative(rel_path)
        if not src.exists():
            raise ArtifactError(
                f"Path not found for artifact '{name}'",
                job=job,
                details={"artifact": name, "path": rel_path},
            )
        target = self.slot(name, rel_path)
        copy_any(src, target)
        return target

    def items(self, name: str, *, job: Optional[str] = None) -> List[Path]:
        """Top-level entries of an artifact (what gets copied into the job root)."""
        base = self.path_for(name)
        if not base.exists():
            raise ArtifactError(
                f"Artifact not found: '{name}'",
                job=job,
                details={"artifact": name, "store": str(self.root)},
            )
        return sorted(base.iterdir())

    def restore(self, name: str, dest_root: str | Path, path: str = ".", *, job: Optional[str] = None) -> Path:
        target = Path(dest_root) / check_relative(path, "restore path")
        items = self.items(name, job=job)
        target.mkdir(parents=True, exist_ok=True)
        for item in items:
            copy_any(item, target / item.name)
        return target
