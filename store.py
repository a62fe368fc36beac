# store.py
"""
Latest observation per target, merged from probe outcomes.

Only the controller writes here, one event at a time, so there is no locking.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from checks import (
    HealthFailure,
    HealthNotConfigured,
    HealthOk,
    HealthOutcome,
    ReachabilityFailure,
    ReachabilityOk,
    ReachabilityOutcome,
)

HealthState = Union[None, HealthOk, HealthFailure, HealthNotConfigured]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Observation:
    latency_ms: Optional[float] = None
    reachability_error: Optional[str] = None
    health: HealthState = None  # None: unknown
    updated_at: Optional[datetime] = None
    cycle: int = 0
    health_cycle: int = 0

    @property
    def reachable(self) -> Optional[bool]:
        if self.latency_ms is not None:
            return True
        if self.reachability_error is not None:
            return False
        return None

    @property
    def health_data(self) -> Optional[Dict[str, Any]]:
        return self.health.data if isinstance(self.health, HealthOk) else None

    @property
    def health_error(self) -> Optional[str]:
        return self.health.reason if isinstance(self.health, HealthFailure) else None

    @property
    def last_error(self) -> Optional[str]:
        # health runs later in the cycle, so its error is the more recent one
        return self.health_error or self.reachability_error


class StateStore:
    def __init__(self, count: int, clock: Callable[[], datetime] = utcnow):
        self._observations: List[Observation] = [Observation() for _ in range(count)]
        self._clock = clock

    def __len__(self) -> int:
        return len(self._observations)

    def __iter__(self) -> Iterator[Observation]:
        return iter(self._observations)

    def __getitem__(self, index: int) -> Observation:
        return self._observations[index]

    def apply_reachability(self, index: int, outcome: ReachabilityOutcome) -> Observation:
        if not isinstance(outcome, (ReachabilityOk, ReachabilityFailure)):
            raise TypeError(f"Not a reachability outcome: {outcome!r}")
        obs = self._observations[index]
        obs.cycle += 1
        # a new cycle starts with unknown health; this cycle's health result fills it in
        obs.health = None
        if isinstance(outcome, ReachabilityOk):
            obs.latency_ms = outcome.latency_ms
            obs.reachability_error = None
        else:
            obs.latency_ms = None
            obs.reachability_error = outcome.reason
            obs.health_cycle = obs.cycle
        obs.updated_at = self._clock()
        return obs

    def apply_health(self, index: int, outcome: HealthOutcome) -> Observation:
        if not isinstance(outcome, (HealthOk, HealthFailure, HealthNotConfigured)):
            raise TypeError(f"Not a health outcome: {outcome!r}")
        obs = self._observations[index]
        obs.health = outcome
        obs.health_cycle = obs.cycle
        obs.updated_at = self._clock()
        return obs
