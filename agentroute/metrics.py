"""
Running orchestration metrics.

The aggregator is fed by the client (one call per finished `send`) and
by routing events. Every update is a single short critical section, so
`snapshot()` never waits on in-flight requests.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter

from pydantic import BaseModel, ConfigDict

from .errors import OrchestrationError
from .events import EventKind, RoutingEvent
from .types import DispatchOutcome

logger = logging.getLogger(__name__)


class MetricsSnapshot(BaseModel):
    """Read-only view of the metrics at one instant."""

    model_config = ConfigDict(frozen=True)

    requests: int = 0
    successes: int = 0
    failures: int = 0
    cancelled: int = 0
    total_cost: float = 0.0
    wasted_cost: float = 0.0
    total_latency_ms: float = 0.0
    tier_distribution: dict[str, int] = {}
    failure_kinds: dict[str, int] = {}
    races: int = 0
    race_entries: dict[str, int] = {}
    race_wins: dict[str, int] = {}
    retries: int = 0
    escalations: int = 0
    tier_skips: int = 0

    @property
    def average_latency_ms(self) -> float:
        if self.successes == 0:
            return 0.0
        return self.total_latency_ms / self.successes

    @property
    def success_rate(self) -> float:
        finished = self.successes + self.failures
        return self.successes / finished if finished else 0.0

    @property
    def race_win_rate(self) -> dict[str, float]:
        """Races won / races entered, per backend."""
        return {
            backend: self.race_wins.get(backend, 0) / entered
            for backend, entered in self.race_entries.items()
            if entered
        }


class MetricsAggregator:
    """
    Accumulates counters for one OrchestrationClient.

    Also usable as an event sink: cost, race, retry, escalation and skip
    counters come from routing events.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._requests = 0
        self._successes = 0
        self._failures = 0
        self._cancelled = 0
        self._total_cost = 0.0
        self._wasted_cost = 0.0
        self._total_latency_ms = 0.0
        self._tiers: Counter[str] = Counter()
        self._failure_kinds: Counter[str] = Counter()
        self._races = 0
        self._race_entries: Counter[str] = Counter()
        self._race_wins: Counter[str] = Counter()
        self._retries = 0
        self._escalations = 0
        self._tier_skips = 0

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()

    def record_success(self, outcome: DispatchOutcome, latency_ms: float) -> None:
        with self._lock:
            self._requests += 1
            self._successes += 1
            self._total_latency_ms += latency_ms
            if outcome.tier is not None:
                self._tiers[outcome.tier.value] += 1

    def record_failure(self, error: BaseException) -> None:
        kind = error.kind.value if isinstance(error, OrchestrationError) else type(error).__name__
        with self._lock:
            self._requests += 1
            self._failures += 1
            self._failure_kinds[kind] += 1

    def record_cancelled(self) -> None:
        with self._lock:
            self._requests += 1
            self._cancelled += 1

    def emit(self, event: RoutingEvent) -> None:
        """Fold a routing event into the counters."""
        kind = event.kind
        if kind == EventKind.COST_RECORDED:
            cost = float(event.data.get("cost", 0.0))
            wasted = float(event.data.get("wasted_cost", 0.0))
            with self._lock:
                self._total_cost += cost + wasted
                self._wasted_cost += wasted
        elif kind == EventKind.RACE_OUTCOME:
            entrants = list(event.data.get("candidates", []))
            if len(entrants) < 2:
                return
            with self._lock:
                self._races += 1
                self._race_entries.update(entrants)
                if event.backend:
                    self._race_wins[event.backend] += 1
        elif kind == EventKind.RETRY:
            with self._lock:
                self._retries += 1
        elif kind == EventKind.TIER_ADVANCED:
            with self._lock:
                self._escalations += 1
        elif kind == EventKind.TIER_SKIPPED_FOR_COST:
            with self._lock:
                self._tier_skips += 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests=self._requests,
                successes=self._successes,
                failures=self._failures,
                cancelled=self._cancelled,
                total_cost=self._total_cost,
                wasted_cost=self._wasted_cost,
                total_latency_ms=self._total_latency_ms,
                tier_distribution=dict(self._tiers),
                failure_kinds=dict(self._failure_kinds),
                races=self._races,
                race_entries=dict(self._race_entries),
                race_wins=dict(self._race_wins),
                retries=self._retries,
                escalations=self._escalations,
                tier_skips=self._tier_skips,
            )


__all__ = ["MetricsAggregator", "MetricsSnapshot"]
