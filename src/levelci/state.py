# state.py
from __future__ import annotations

import threading
from typing import Dict, Iterable, List

from .model import JobStatus


class RunState:
    """
    The only cross-job mutable state of a run: job statuses, the failed-job
    set (in failure order) and the cancelled flag.

    Each job's task writes its own entry once, on its terminal transition;
    later levels read it through the condition evaluator.
    """

    def __init__(self, job_names: Iterable[str]):
        self._lock = threading.Lock()
        self._status: Dict[str, JobStatus] = {name: JobStatus.PENDING for name in job_names}
        self._failed: List[str] = []
        self._cancelled = threading.Event()

    # ---- status ----

    def status(self, name: str) -> JobStatus:
        with self._lock:
            return self._status[name]

    def mark_running(self, name: str) -> None:
        self._transition(name, JobStatus.RUNNING)

    def mark_success(self, name: str) -> None:
        self._transition(name, JobStatus.SUCCESS)

    def mark_skipped(self, name: str) -> None:
        self._transition(name, JobStatus.SKIPPED)

    def mark_failure(self, name: str) -> None:
        with self._lock:
            self._check(name, JobStatus.FAILURE)
            self._status[name] = JobStatus.FAILURE
            if name not in self._failed:
                self._failed.append(name)

    def _transition(self, name: str, new: JobStatus) -> None:
        with self._lock:
            self._check(name, new)
            self._status[name] = new

    def _check(self, name: str, new: JobStatus) -> None:
        current = self._status[name]
        if current.terminal:
            raise RuntimeError(f"job {name!r} already finished with status {current.value}")
        if new is JobStatus.RUNNING and current is not JobStatus.PENDING:
            raise RuntimeError(f"job {name!r} cannot start from status {current.value}")
        if new in (JobStatus.SUCCESS, JobStatus.FAILURE) and current is not JobStatus.RUNNING:
            raise RuntimeError(f"job {name!r} cannot finish from status {current.value}")

    def statuses(self) -> Dict[str, JobStatus]:
        with self._lock:
            return dict(self._status)

    # ---- failure signal ----

    @property
    def failed_jobs(self) -> List[str]:
        with self._lock:
            return list(self._failed)

    @property
    def any_failed(self) -> bool:
        with self._lock:
            return bool(self._failed)

    # ---- cancellation ----

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()
