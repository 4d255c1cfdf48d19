# timeout.py
"""
Deadline enforcement for a unit of work.

The unit of work is usually the whole retry loop of a step, so one deadline
covers every attempt plus the backoff sleeps between them. The work runs on a
background thread; the watchdog polls it on a fixed interval and, once the
limit is reached, kills every process group the work registered and reports
exit code 124 instead of the work's own result.
"""
from __future__ import annotations

import os
import re
import signal
import subprocess
import threading
import time
from typing import Callable, Optional, Set

from .errors import TIMEOUT_EXIT_CODE, ValidationError

POLL_INTERVAL = 1.0
GRACE_PERIOD = 1.0

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smh]?)\s*$")
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600}


def parse_duration(text: str | int | None) -> Optional[int]:
    """'30s' -> 30, '5m' -> 300, '2h' -> 7200, '45' -> 45, None -> None."""
    if text is None:
        return None
    if isinstance(text, int):
        return text
    m = _DURATION_RE.match(text)
    if not m:
        raise ValidationError(f"Invalid timeout {text!r} (expected <int>[s|m|h], e.g. '30s', '5m', '2h')")
    return int(m.group(1)) * _UNIT_SECONDS[m.group(2)]


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "none"
    seconds = int(seconds)
    if seconds >= 3600:
        return f"{seconds // 3600}h"
    if seconds >= 60:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def merge_timeout(workflow: Optional[str] = None, job: Optional[str] = None, step: Optional[str] = None) -> Optional[str]:
    """Priority: step > job > workflow."""
    if step is not None:
        return step
    if job is not None:
        return job
    return workflow


def kill_process_group(proc: subprocess.Popen, grace: float = GRACE_PERIOD) -> None:
    """SIGTERM the process group, wait `grace` seconds, then SIGKILL it."""
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return
    try:
        proc.wait(timeout=grace)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        return
    proc.wait()


class TimeoutScope:
    """
    Handle passed to the wrapped work.

    Child processes are registered here so the watchdog can reach them; they
    must be started with `start_new_session=True` (own process group).
    """

    def __init__(self, grace: float = GRACE_PERIOD):
        self.grace = grace
        self._procs: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()
        self._expired = threading.Event()

    @property
    def expired(self) -> bool:
        return self._expired.is_set()

    def register(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.add(proc)
        if self.expired:
            kill_process_group(proc, self.grace)

    def unregister(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.discard(proc)

    def sleep(self, seconds: float) -> None:
        # wakes up early when the deadline hits
        self._expired.wait(seconds)

    def expire(self) -> None:
        self._expired.set()
        with self._lock:
            procs = list(self._procs)
        for proc in procs:
            kill_process_group(proc, self.grace)


def run_with_timeout(
    seconds: Optional[float],
    work: Callable[[TimeoutScope], int],
    *,
    poll_interval: float = POLL_INTERVAL,
    grace: float = GRACE_PERIOD,
    on_timeout: Optional[Callable[[float], None]] = None,
) -> int:
    """
    Run `work(scope)` and return its exit code, or 124 if `seconds` elapse first.

    With `seconds=None` the work runs inline, without a watchdog.
    """
    scope = TimeoutScope(grace=grace)
    if seconds is None:
        return work(scope)

    result: dict = {}

    def _target() -> None:
        try:
            result["code"] = work(scope)
        except BaseException as e:  # re-raised on the caller's thread
            result["error"] = e

    thread = threading.Thread(target=_target, name="levelci-timeout-work", daemon=True)
    start = time.monotonic()
    thread.start()

    while thread.is_alive():
        elapsed = time.monotonic() - start
        if elapsed >= seconds:
            scope.expire()
            if on_timeout is not None:
                on_timeout(elapsed)
            thread.join(grace + poll_interval)
            return TIMEOUT_EXIT_CODE
        thread.join(min(poll_interval, seconds - elapsed))

    if "error" in result:
        raise result["error"]
    return result["code"]
