"""Exponential backoff schedule for the convergence poll loop.

``BackoffSchedule`` is a plain value: it knows the round counter, the
interval for the next round and the deadline, but never sleeps or reads
a clock by itself.  Callers pass the current monotonic time in, which
keeps the schedule testable without spawning nodes.

Round ``n`` (``n >= 1``) waits ``min(t0 * f**(n-1), t_max)`` measured
from the completion of round ``n-1`` (or from ``start`` for round 1).

Usage::

    schedule = BackoffSchedule(initial=5.0, factor=1.5, cap=60.0, deadline=600.0)
    schedule.start(time.monotonic())
    while not schedule.expired(time.monotonic()):
        interval = schedule.next_interval()
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def interval_for_round(
    round_number: int,
    initial: float,
    factor: float,
    cap: float | None = None,
) -> float:
    """Return the wait before round *round_number* (1-based).

    Args:
        round_number: Round number, starting at 1.
        initial: ``t0``, the first interval in seconds.
        factor: ``f``, the multiplier applied per round.
        cap: ``t_max``, an optional upper bound on the interval.

    Returns:
        ``min(initial * factor ** (round_number - 1), cap)``.

    """
    if round_number < 1:
        raise ValueError(f"round numbers start at 1, got {round_number}")
    try:
        interval = initial * factor ** (round_number - 1)
    except OverflowError:
        interval = float("inf")
    if cap is not None:
        interval = min(interval, cap)
    return interval


@dataclass
class BackoffSchedule:
    """Round counter, current interval and deadline of one poll loop.

    Attributes:
        initial: ``t0`` in seconds, must be positive.
        factor: ``f``, must be greater than 1.
        cap: ``t_max`` in seconds, or ``None`` for no cap.
        deadline: ``T`` in seconds, measured from ``start``.

    """

    initial: float
    factor: float
    cap: float | None = None
    deadline: float = 600.0
    round: int = field(default=0, init=False)
    current_interval: float = field(default=0.0, init=False)
    started_at: float | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        """Validate the schedule parameters."""
        if self.initial <= 0:
            raise ValueError(f"initial interval must be > 0, got {self.initial}")
        if self.factor <= 1:
            raise ValueError(f"backoff factor must be > 1, got {self.factor}")
        if self.cap is not None and self.cap < self.initial:
            raise ValueError(f"cap {self.cap} is below the initial interval {self.initial}")
        if self.deadline <= 0:
            raise ValueError(f"deadline must be > 0, got {self.deadline}")

    def start(self, now: float) -> None:
        """Reset to round 0 and anchor the deadline at *now*.

        Only called at the start of a run; the schedule never resets
        mid-run.
        """
        self.round = 0
        self.current_interval = 0.0
        self.started_at = now

    def next_interval(self) -> float:
        """Advance to the next round and return its interval."""
        self.round += 1
        self.current_interval = interval_for_round(
            self.round, self.initial, self.factor, self.cap
        )
        return self.current_interval

    def elapsed(self, now: float) -> float:
        """Seconds since ``start``."""
        if self.started_at is None:
            raise RuntimeError("schedule has not been started")
        return now - self.started_at

    def remaining(self, now: float) -> float:
        """Seconds left before the deadline, never negative."""
        return max(0.0, self.deadline - self.elapsed(now))

    def expired(self, now: float) -> bool:
        """Return ``True`` once the deadline has been reached."""
        return self.elapsed(now) >= self.deadline
