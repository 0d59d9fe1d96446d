"""Fake monotonic clock for deletion waits and retry schedules."""

from __future__ import annotations


class FakeClock:
    """Clock whose sleeps return immediately and advance time.

    Pass ``clock.sleep`` and ``clock.monotonic`` wherever the engine accepts
    a sleep function and a clock.
    """

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    @property
    def slept(self) -> float:
        """Total simulated sleep time in seconds."""
        return sum(self.sleeps)
