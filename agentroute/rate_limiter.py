"""
Sliding-window admission control per provider.

Three dimensions are tracked per provider: requests, input tokens and
output tokens. A successful `try_acquire` reserves its estimate
immediately so two concurrent callers can never both pass on the same
freed capacity; `record` later reconciles the reservation with actual
usage.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from .config import ProviderLimits
from .errors import CapacityExceededError
from .types import Admission, Admit, MustWait, Reservation

logger = logging.getLogger(__name__)

# Smallest wait ever returned, so MustWait is always strictly positive
MIN_WAIT_SECONDS = 0.001


@dataclass
class UsageEntry:
    """One admitted request; pending until `record` reconciles it."""

    timestamp: float
    requests: int
    input_tokens: int
    output_tokens: int
    reservation_id: int | None = None

    @property
    def pending(self) -> bool:
        return self.reservation_id is not None


@dataclass
class WindowState:
    """Usage log for one provider, oldest entry first."""

    limits: ProviderLimits
    entries: deque[UsageEntry] = field(default_factory=deque)

    def evict(self, now: float) -> None:
        horizon = now - self.limits.window_seconds
        while self.entries and self.entries[0].timestamp <= horizon:
            self.entries.popleft()

    def totals(self) -> tuple[int, int, int]:
        requests = input_tokens = output_tokens = 0
        for entry in self.entries:
            requests += entry.requests
            input_tokens += entry.input_tokens
            output_tokens += entry.output_tokens
        return requests, input_tokens, output_tokens

    def fits(self, totals: tuple[int, int, int], est_input: int, est_output: int) -> bool:
        requests, input_tokens, output_tokens = totals
        return (
            requests + 1 <= self.limits.max_requests
            and input_tokens + est_input <= self.limits.max_input_tokens
            and output_tokens + est_output <= self.limits.max_output_tokens
        )


@dataclass
class RateLimitStatus:
    """Point-in-time usage for one provider."""

    provider: str
    requests_used: int
    requests_limit: int
    input_tokens_used: int
    input_tokens_limit: int
    output_tokens_used: int
    output_tokens_limit: int
    pending_reservations: int
    window_remaining: float

    def requests_percentage(self) -> float:
        return _percentage(self.requests_used, self.requests_limit)

    def input_tokens_percentage(self) -> float:
        return _percentage(self.input_tokens_used, self.input_tokens_limit)

    def output_tokens_percentage(self) -> float:
        return _percentage(self.output_tokens_used, self.output_tokens_limit)


def _percentage(used: int, limit: int) -> float:
    if limit <= 0:
        return 100.0
    return used / limit * 100.0


class RateLimiter:
    """
    Per-provider sliding-window rate limiter.

    All window state is owned here and guarded by a single lock, so
    check-and-reserve is atomic. `try_acquire` never sleeps; callers
    decide what to do with a MustWait.

    Providers without configured limits (local backends) are always
    admitted.
    """

    def __init__(
        self,
        limits: Iterable[ProviderLimits] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, WindowState] = {}
        self._ids = itertools.count(1)
        for item in limits:
            self.configure(item)

    def configure(self, limits: ProviderLimits) -> None:
        """Set (or replace) the limits for `limits.provider`."""
        with self._lock:
            state = self._states.get(limits.provider)
            if state is None:
                self._states[limits.provider] = WindowState(limits=limits)
            else:
                state.limits = limits
        logger.debug(
            f"Rate limits for {limits.provider}: {limits.max_requests} req, "
            f"{limits.max_input_tokens} in, {limits.max_output_tokens} out "
            f"per {limits.window_seconds:g}s"
        )

    def is_limited(self, provider: str) -> bool:
        return provider in self._states

    def try_acquire(self, provider: str, est_input: int, est_output: int) -> Admission:
        """
        Admit the request now or say how long to wait.

        Raises:
            CapacityExceededError: The estimate alone exceeds the window capacity
        """
        with self._lock:
            now = self._clock()
            reservation = Reservation(
                provider=provider,
                reservation_id=next(self._ids),
                input_tokens=est_input,
                output_tokens=est_output,
                timestamp=now,
            )
            state = self._states.get(provider)
            if state is None:
                return Admit(reservation)

            self._check_capacity(state.limits, est_input, est_output)
            state.evict(now)

            if state.fits(state.totals(), est_input, est_output):
                state.entries.append(
                    UsageEntry(
                        timestamp=now,
                        requests=1,
                        input_tokens=est_input,
                        output_tokens=est_output,
                        reservation_id=reservation.reservation_id,
                    )
                )
                return Admit(reservation)

            wait = self._time_until_fits(state, now, est_input, est_output)

        logger.debug(f"{provider}: window full, must wait {wait:.3f}s")
        return MustWait(wait)

    def record(
        self,
        provider: str,
        actual_input: int,
        actual_output: int,
        reservation: Reservation | None = None,
    ) -> None:
        """
        Reconcile actual usage after a call completes.

        Without an explicit reservation the oldest pending one is
        reconciled. When nothing matches (none pending, or the
        reservation already aged out of the window) the usage is
        appended as a token-only entry at the current time.
        """
        with self._lock:
            state = self._states.get(provider)
            if state is None:
                return
            now = self._clock()
            state.evict(now)

            entry = self._find_entry(state, reservation)
            if entry is not None:
                entry.input_tokens = actual_input
                entry.output_tokens = actual_output
                entry.reservation_id = None
            else:
                state.entries.append(
                    UsageEntry(
                        timestamp=now,
                        requests=0,
                        input_tokens=actual_input,
                        output_tokens=actual_output,
                    )
                )

    def release(self, reservation: Reservation) -> bool:
        """Drop a reservation that was never used. Returns True if found."""
        with self._lock:
            state = self._states.get(reservation.provider)
            if state is None:
                return False
            for entry in state.entries:
                if entry.reservation_id == reservation.reservation_id:
                    state.entries.remove(entry)
                    return True
            return False

    def status(self, provider: str) -> RateLimitStatus | None:
        """Current usage for `provider`, or None if it is unlimited."""
        with self._lock:
            state = self._states.get(provider)
            if state is None:
                return None
            now = self._clock()
            state.evict(now)
            requests, input_tokens, output_tokens = state.totals()
            oldest = state.entries[0].timestamp if state.entries else now
            return RateLimitStatus(
                provider=provider,
                requests_used=requests,
                requests_limit=state.limits.max_requests,
                input_tokens_used=input_tokens,
                input_tokens_limit=state.limits.max_input_tokens,
                output_tokens_used=output_tokens,
                output_tokens_limit=state.limits.max_output_tokens,
                pending_reservations=sum(1 for e in state.entries if e.pending),
                window_remaining=max(0.0, oldest + state.limits.window_seconds - now)
                if state.entries
                else 0.0,
            )

    @staticmethod
    def _check_capacity(limits: ProviderLimits, est_input: int, est_output: int) -> None:
        if limits.max_requests < 1:
            raise CapacityExceededError(limits.provider, "requests", 1, limits.max_requests)
        if est_input > limits.max_input_tokens:
            raise CapacityExceededError(
                limits.provider, "input_tokens", est_input, limits.max_input_tokens
            )
        if est_output > limits.max_output_tokens:
            raise CapacityExceededError(
                limits.provider, "output_tokens", est_output, limits.max_output_tokens
            )

    @staticmethod
    def _time_until_fits(state: WindowState, now: float, est_input: int, est_output: int) -> float:
        """Time until enough of the oldest usage expires for the estimate to fit."""
        requests, input_tokens, output_tokens = state.totals()
        for entry in state.entries:
            requests -= entry.requests
            input_tokens -= entry.input_tokens
            output_tokens -= entry.output_tokens
            if state.fits((requests, input_tokens, output_tokens), est_input, est_output):
                expires_at = entry.timestamp + state.limits.window_seconds
                return max(expires_at - now, MIN_WAIT_SECONDS)
        # Unreachable once _check_capacity passed; the full window always fits
        return state.limits.window_seconds

    @staticmethod
    def _find_entry(state: WindowState, reservation: Reservation | None) -> UsageEntry | None:
        for entry in state.entries:
            if reservation is None and entry.pending:
                return entry
            if reservation is not None and entry.reservation_id == reservation.reservation_id:
                return entry
        return None


__all__ = ["MIN_WAIT_SECONDS", "RateLimitStatus", "RateLimiter", "UsageEntry", "WindowState"]
