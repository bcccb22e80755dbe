# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry delay policy for failed delivery attempts.

The delay grows linearly with the attempt number and is capped::

    backoff(n) = min(n * base_delay_ms, cap_delay_ms)

With the defaults (2 s base, 30 s cap) the schedule is 2 s, 4 s, 6 s, ...
reaching the 30 s ceiling at the 15th attempt.

Attributes:
    DEFAULT_BASE_DELAY_MS: Delay unit per attempt.
    DEFAULT_CAP_DELAY_MS: Upper bound for any single delay.
    DEFAULT_MAX_ATTEMPTS: Attempt budget applied when a caller gives none.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_BASE_DELAY_MS = 2000
DEFAULT_CAP_DELAY_MS = 30000
DEFAULT_MAX_ATTEMPTS = 3


def backoff(
    attempt: int,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    cap_delay_ms: int = DEFAULT_CAP_DELAY_MS,
) -> int:
    """Return the delay in milliseconds before retrying after ``attempt`` failures.

    Args:
        attempt: Number of failed attempts so far (1 for the first failure).
        base_delay_ms: Delay added per attempt.
        cap_delay_ms: Ceiling for the returned delay.

    Returns:
        Delay in milliseconds, 0 for ``attempt <= 0``.
    """
    if attempt <= 0:
        return 0
    return min(attempt * base_delay_ms, cap_delay_ms)


@dataclass(frozen=True)
class BackoffPolicy:
    """Linear, capped backoff plus the terminal-failure decision.

    Attributes:
        base_delay_ms: Delay unit per attempt.
        cap_delay_ms: Upper bound for any single delay.
    """

    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    cap_delay_ms: int = DEFAULT_CAP_DELAY_MS

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.cap_delay_ms < self.base_delay_ms:
            raise ValueError("cap_delay_ms must be >= base_delay_ms")

    def delay_ms(self, attempt: int) -> int:
        """Delay in milliseconds after ``attempt`` failed attempts."""
        return backoff(attempt, self.base_delay_ms, self.cap_delay_ms)

    def delay_seconds(self, attempt: int) -> float:
        return self.delay_ms(attempt) / 1000.0

    @staticmethod
    def is_exhausted(attempts: int, max_attempts: int) -> bool:
        """True once ``attempts`` has used up the ``max_attempts`` budget."""
        return attempts >= max_attempts


__all__ = [
    "DEFAULT_BASE_DELAY_MS",
    "DEFAULT_CAP_DELAY_MS",
    "DEFAULT_MAX_ATTEMPTS",
    "BackoffPolicy",
    "backoff",
]
