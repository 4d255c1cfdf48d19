"""Console output formatting utilities for levelci."""

from __future__ import annotations

import sys
import threading
from typing import Dict, Iterable, List, Optional


class Console:
    """Centralized console output formatting.

    Jobs of one level run on several threads, so every write goes through a
    lock and job/step lines carry a `[job]` or `[job/step]` prefix.
    """

    def __init__(self, debug: bool = False, stream=None, err_stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to sys.stdout at write time)
            err_stream: Where errors go (defaults to sys.stderr at write time)
        """
        self.debug = debug
        self._stream = stream
        self._err_stream = err_stream
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        if err:
            target = self._err_stream or sys.stderr
        else:
            target = self._stream or sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=target)
            target.flush()

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out("", title, "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        job_count: int,
        levels: List[List[str]],
    ) -> None:
        """Print run start information."""
        lines = [
            "",
            "=" * 40,
            f" Workflow: {workflow}",
            f" Run ID: {run_id}",
            f" Jobs: {job_count}",
            f" Levels: {len(levels)}",
            "=" * 40,
        ]
        self._out(*lines)

    def print_level(self, index: int, jobs: Iterable[str]) -> None:
        self._out("", f"-> Level {index}: {', '.join(jobs)}")

    def print_level_failed(self, index: int, failed_jobs: Iterable[str]) -> None:
        self._out(f"STOP: level {index} failed ({', '.join(failed_jobs)}); later levels not started")

    def print_job_start(self, name: str, executor: str) -> None:
        """Print job start message."""
        self._out(f"[{name}] JOB STARTED (executor: {executor})")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"[{name}] JOB SKIPPED ({reason})")

    def print_job_success(self, name: str, duration: Optional[float] = None) -> None:
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"[{name}] JOB SUCCEEDED{suffix}")

    def print_job_failure(
        self,
        name: str,
        reason: str,
        continue_on_error: bool = False,
    ) -> None:
        """Print job failure, with only the first line of the reason unless debugging."""
        lines = [f"[{name}] JOB FAILED"]
        if self.debug:
            lines.append(f"[{name}] Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"[{name}] Error: {error_line}")
        if continue_on_error:
            lines.append(f"[{name}] continuing despite failure (continue_on_error)")
        self._out(*lines)

    def print_step(self, job: str, step: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {step}")

    def print_step_output(self, job: str, step: str, line: str) -> None:
        self._out(f"[{job}/{step}] {line.rstrip()}")

    def print_step_skipped(self, job: str, step: str, condition: str) -> None:
        self._out(f"[{job}] STEP SKIPPED: {step} (condition: {condition})")

    def print_step_result(self, job: str, step: str, exit_code: int, duration: float, attempts: int = 1) -> None:
        tries = f", attempts={attempts}" if attempts > 1 else ""
        if exit_code == 0:
            self._out(f"[{job}] STEP OK: {step} ({duration:.1f}s{tries})")
        else:
            self._out(f"[{job}] STEP FAILED: {step} (exit={exit_code}, {duration:.1f}s{tries})")

    def print_retry(
        self,
        job: str,
        step: str,
        attempt: int,
        max_attempts: int,
        delay: float,
        backoff: str,
        exit_code: int,
    ) -> None:
        self._out(
            f"[{job}] RETRY: {step} attempt={attempt}/{max_attempts} "
            f"next_attempt={attempt + 1} delay={delay:g}s backoff={backoff} exit_code={exit_code}"
        )

    def print_timeout(self, job: str, step: str, limit: str, elapsed: float) -> None:
        self._out(f"[{job}] TIMEOUT: {step} reached {limit} (elapsed {elapsed:.0f}s)", err=True)

    def print_artifact(self, job: str, action: str, name: str, path: str) -> None:
        """Print artifact transfer ('saved' / 'restored')."""
        self._out(f"[{job}] ARTIFACT {action}: {name} -> {path}")

    def print_executor(self, executor: str, message: str) -> None:
        self._out(f"[executor:{executor}] {message}")

    def print_results(
        self,
        results: Dict[str, str],
        failed: Iterable[str] = (),
        reasons: Optional[Dict[str, str]] = None,
    ) -> None:
        """Print final results summary, with the first line of each failure reason."""
        failed = list(failed)
        reasons = reasons or {}
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            status_display = "NOT RUN" if status == "pending" else status.upper()
            lines.append(f"  {job}: {status_display}")
        if failed:
            lines.append("")
            lines.append("Failed jobs:")
            for name in failed:
                reason = (reasons.get(name) or "").split("\n")[0]
                lines.append(f"  - {name}: {reason}" if reason else f"  - {name}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = ["", f"ERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.extend(["", suggestion])
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=self._err_stream or sys.stderr)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
