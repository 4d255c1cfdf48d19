# retry.py
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import ValidationError
from .model import BACKOFF_KINDS, RetryPolicy

# No retry by default (single attempt); exponential backoff once enabled.
DEFAULT_RETRY = RetryPolicy(max_attempts=1, backoff="exponential", min_delay=1, max_delay=60)


@dataclass(frozen=True)
class RetryEvent:
    """Emitted after every failed attempt that will be retried."""
    attempt: int
    max_attempts: int
    delay: float
    backoff: str
    exit_code: int


def merge_retry(
    workflow: Optional[RetryPolicy] = None,
    job: Optional[RetryPolicy] = None,
    step: Optional[RetryPolicy] = None,
) -> RetryPolicy:
    """
    Resolve the effective policy with priority step > job > workflow > default.
    Merge is field-wise: a step that only sets max_attempts keeps the job's backoff.
    """
    resolved = {
        "max_attempts": DEFAULT_RETRY.max_attempts,
        "backoff": DEFAULT_RETRY.backoff,
        "min_delay": DEFAULT_RETRY.min_delay,
        "max_delay": DEFAULT_RETRY.max_delay,
    }
    for layer in (workflow, job, step):
        if layer is None:
            continue
        for key in resolved:
            value = getattr(layer, key)
            if value is not None:
                resolved[key] = value
    return RetryPolicy(**resolved)


def validate_retry(policy: Optional[RetryPolicy], where: str) -> None:
    if policy is None:
        return
    if policy.max_attempts is not None and policy.max_attempts < 1:
        raise ValidationError(f"{where}: retry max_attempts must be >= 1, got {policy.max_attempts}")
    if policy.backoff is not None and policy.backoff not in BACKOFF_KINDS:
        raise ValidationError(f"{where}: unknown retry backoff {policy.backoff!r} (expected one of {BACKOFF_KINDS})")
    for key in ("min_delay", "max_delay"):
        value = getattr(policy, key)
        if value is not None and value < 0:
            raise ValidationError(f"{where}: retry {key} must be >= 0, got {value}")


def compute_delay(attempt: int, backoff: str, min_delay: float, max_delay: float) -> float:
    """
    Delay after the `attempt`-th failure (1-based), capped at max_delay.

        exponential: min_delay * 2^(attempt-1)
        linear:      min_delay * attempt
        constant:    min_delay
    """
    if backoff == "linear":
        raw = min_delay * attempt
    elif backoff == "constant":
        raw = min_delay
    else:
        # unknown strategies fall back to exponential
        raw = min_delay * (2 ** (attempt - 1))
    return min(raw, max_delay)


def run_with_retry(
    policy: RetryPolicy,
    attempt_fn: Callable[[int], int],
    *,
    on_retry: Optional[Callable[[RetryEvent], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Callable[[], bool] = lambda: False,
) -> tuple[int, int]:
    """
    Run `attempt_fn(attempt)` until it returns exit code 0 or attempts run out.

    Returns (exit_code, attempts_made). `should_stop` is checked after every
    failed attempt and sleep so an expired timeout ends the loop early.
    """
    max_attempts = int(policy.max_attempts or 1)

    if max_attempts <= 1:
        return attempt_fn(1), 1

    exit_code = 1
    for attempt in range(1, max_attempts + 1):
        exit_code = attempt_fn(attempt)
        if exit_code == 0:
            return 0, attempt

        if attempt == max_attempts or should_stop():
            return exit_code, attempt

        delay = compute_delay(
            attempt,
            policy.backoff or "exponential",
            float(policy.min_delay if policy.min_delay is not None else 1),
            float(policy.max_delay if policy.max_delay is not None else 60),
        )
        if on_retry is not None:
            on_retry(
                RetryEvent(
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay=delay,
                    backoff=policy.backoff or "exponential",
                    exit_code=exit_code,
                )
            )
        sleep(delay)
        if should_stop():
            return exit_code, attempt

    return exit_code, max_attempts
