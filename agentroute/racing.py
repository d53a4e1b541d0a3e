"""
Racing dispatch: one logical request, several backends, first success wins.

Each candidate runs in its own task with its own CancellationToken.
The winner is returned once every loser has been stopped and its
wasted cost collected, so cost is attributed exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import NoReturn

from .backends import BackendInvoker
from .cancellation import CancellationToken, CancelledException
from .config import RaceConfig
from .error_classifier import FATAL_KINDS
from .errors import (
    AllCandidatesFailed,
    CandidateCancelled,
    CapacityExceededError,
    ConfigurationError,
    ProviderConfigurationError,
    ProviderError,
    RateLimitedByProvider,
)
from .events import EventKind, EventSink, LoggingEventSink, RoutingEvent
from .rate_limiter import RateLimiter
from .types import (
    Admit,
    Backend,
    CancelledCandidate,
    DispatchOutcome,
    RequestEnvelope,
    Reservation,
    Tier,
)

logger = logging.getLogger(__name__)


@dataclass
class _Candidate:
    """Book-keeping for one launched competitor."""

    index: int
    backend: Backend
    token: CancellationToken
    reservation: Reservation | None = None
    delay: float = 0.0
    invoked: bool = False
    task: asyncio.Task | None = None


class RacingDispatcher:
    """
    Dispatch candidates concurrently and keep the first success.

    Rate limiting is checked per candidate before launch. Candidates that
    must wait are delayed or skipped according to RaceConfig; neither
    ever blocks the other candidates.

    Example:
        dispatcher = RacingDispatcher(invoker, limiter)
        outcome = await dispatcher.race(tier_spec.backends, envelope)
    """

    def __init__(
        self,
        invoker: BackendInvoker,
        limiter: RateLimiter,
        config: RaceConfig | None = None,
        max_concurrent: int = 16,
        semaphore: asyncio.Semaphore | None = None,
        event_sink: EventSink | None = None,
    ):
        self.invoker = invoker
        self.limiter = limiter
        self.config = config or RaceConfig()
        self.event_sink = event_sink or LoggingEventSink()
        # Caps outbound calls across every race sharing this dispatcher
        self._semaphore = semaphore or asyncio.Semaphore(max_concurrent)

    def _emit(
        self,
        kind: EventKind,
        task_id: str,
        tier: Tier | None,
        backend: str | None = None,
        **data,
    ) -> None:
        self.event_sink.emit(
            RoutingEvent(kind=kind, task_id=task_id, tier=tier, backend=backend, data=data)
        )

    async def race(
        self,
        candidates: Sequence[Backend],
        envelope: RequestEnvelope,
        *,
        task_id: str | None = None,
        tier: Tier | None = None,
    ) -> DispatchOutcome:
        """
        Run `candidates` concurrently and return the first success.

        Raises:
            RateLimitedByProvider: No candidate could be admitted; carries the shortest wait
            AllCandidatesFailed: Every launched candidate failed
            ProviderError: The single launched candidate failed
        """
        if not candidates:
            raise ConfigurationError("race() needs at least one candidate")
        task_id = task_id if task_id is not None else envelope.task_id

        launched, rejected, shortest_wait = self._admit(candidates, envelope, task_id, tier)
        if not launched:
            if shortest_wait is not None:
                raise RateLimitedByProvider(
                    f"No candidate admitted; shortest wait {shortest_wait:.3f}s",
                    backend=candidates[0].name,
                    retry_after=shortest_wait,
                )
            if len(rejected) == 1:
                raise rejected[0]
            raise AllCandidatesFailed(rejected)

        start = time.perf_counter()
        for cand in launched:
            cand.task = asyncio.ensure_future(self._run_candidate(cand, envelope))

        try:
            winner, finished = await self._await_winner(launched)
        except asyncio.CancelledError:
            # Whole race cancelled: stop everyone, keep what they billed
            for cand in launched:
                cand.token.cancel()
            await self._drain(launched)
            losers = self._collect(launched, None)
            wasted = sum(c.wasted_cost for c in losers)
            self._emit(
                EventKind.COST_RECORDED, task_id, tier,
                cost=0.0, wasted_cost=wasted, reason="cancelled",
            )
            raise

        for cand in launched:
            if cand is not winner:
                cand.token.cancel()
        await self._drain(launched)
        race_duration_ms = (time.perf_counter() - start) * 1000

        if winner is None:
            self._fail(launched, task_id, tier)

        losers = self._collect(launched, winner)
        outcome = replace(
            finished,
            tier=tier,
            cancelled=tuple(losers),
            race_duration_ms=race_duration_ms,
        )
        self._emit(
            EventKind.RACE_OUTCOME, task_id, tier, winner.backend.name,
            candidates=[c.backend.name for c in launched],
            wasted_cost=outcome.wasted_cost,
            duration_ms=round(race_duration_ms, 3),
        )
        self._emit(
            EventKind.COST_RECORDED, task_id, tier, winner.backend.name,
            cost=outcome.cost, wasted_cost=outcome.wasted_cost,
        )
        return outcome

    def _admit(
        self,
        candidates: Sequence[Backend],
        envelope: RequestEnvelope,
        task_id: str,
        tier: Tier | None,
    ) -> tuple[list[_Candidate], list[ProviderError], float | None]:
        """Check the limiter for every candidate; never sleeps."""
        launched: list[_Candidate] = []
        rejected: list[ProviderError] = []
        shortest_wait: float | None = None

        for index, backend in enumerate(candidates):
            try:
                admission = self.limiter.try_acquire(
                    backend.provider.value,
                    envelope.estimated_input_tokens,
                    envelope.estimated_output_tokens,
                )
            except CapacityExceededError as e:
                self._emit(EventKind.CANDIDATE_SKIPPED, task_id, tier, backend.name, reason="capacity")
                rejected.append(ProviderConfigurationError(str(e), backend=backend.name))
                continue

            if isinstance(admission, Admit):
                launched.append(
                    _Candidate(index, backend, CancellationToken(), reservation=admission.reservation)
                )
                continue

            wait = admission.duration
            if self.config.admission_policy == "delay" and wait <= self.config.max_admission_wait:
                self._emit(EventKind.CANDIDATE_DELAYED, task_id, tier, backend.name, wait=wait)
                launched.append(_Candidate(index, backend, CancellationToken(), delay=wait))
            else:
                self._emit(
                    EventKind.CANDIDATE_SKIPPED, task_id, tier, backend.name,
                    reason="rate_limited", wait=wait,
                )
                shortest_wait = wait if shortest_wait is None else min(shortest_wait, wait)

        return launched, rejected, shortest_wait

    async def _run_candidate(self, cand: _Candidate, envelope: RequestEnvelope) -> DispatchOutcome:
        backend = cand.backend
        provider = backend.provider.value

        delay = cand.delay
        waited = 0.0
        while delay:
            try:
                await cand.token.run(asyncio.sleep(delay))
            except CancelledException:
                raise CandidateCancelled(backend.name) from None
            waited += delay
            try:
                admission = self.limiter.try_acquire(
                    provider, envelope.estimated_input_tokens, envelope.estimated_output_tokens
                )
            except CapacityExceededError as e:
                raise ProviderConfigurationError(str(e), backend=backend.name) from e
            if isinstance(admission, Admit):
                cand.reservation = admission.reservation
                break
            # Capacity may have been taken by another request meanwhile
            delay = admission.duration
            if waited + delay > self.config.max_admission_wait:
                raise RateLimitedByProvider(
                    f"{backend.name} still over its rate limit after waiting {waited:.3f}s",
                    backend=backend.name,
                    retry_after=delay,
                )

        try:
            async with self._semaphore:
                cand.token.check()
                cand.invoked = True
                outcome = await self.invoker.invoke(backend, envelope, cand.token)
        except CancelledException:
            self._release(cand)
            raise CandidateCancelled(backend.name) from None
        except CandidateCancelled as e:
            self._reconcile(cand, e.input_tokens, e.output_tokens)
            raise
        except ProviderError as e:
            if e.kind in FATAL_KINDS:
                self._release(cand)
            else:
                self._reconcile(cand, envelope.estimated_input_tokens, 0)
            raise
        except asyncio.CancelledError:
            if cand.invoked:
                self._reconcile(cand, envelope.estimated_input_tokens, 0)
            else:
                self._release(cand)
            raise

        self._reconcile(cand, outcome.usage.total_input_tokens, outcome.usage.output_tokens)
        return outcome

    def _reconcile(self, cand: _Candidate, input_tokens: int, output_tokens: int) -> None:
        if cand.reservation is None:
            return
        self.limiter.record(
            cand.backend.provider.value, input_tokens, output_tokens, reservation=cand.reservation
        )
        cand.reservation = None

    def _release(self, cand: _Candidate) -> None:
        if cand.reservation is None:
            return
        self.limiter.release(cand.reservation)
        cand.reservation = None

    async def _await_winner(
        self, launched: list[_Candidate]
    ) -> tuple[_Candidate | None, DispatchOutcome | None]:
        """Wait for the first success; ties in one wake-up go to the lowest index."""
        by_task = {cand.task: cand for cand in launched}
        pending = set(by_task)

        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            finished = sorted((by_task[t] for t in done), key=lambda c: c.index)
            for cand in finished:
                error = cand.task.exception()
                if error is None:
                    return cand, cand.task.result()
                if not isinstance(error, ProviderError):
                    # Not a provider failure: a bug, let it surface
                    for other in launched:
                        other.token.cancel()
                    await self._drain(launched)
                    raise error
        return None, None

    async def _drain(self, launched: list[_Candidate]) -> None:
        """Wait for every candidate to settle, hard-cancelling stragglers."""
        tasks = [c.task for c in launched if c.task is not None and not c.task.done()]
        if not tasks:
            return
        _, stragglers = await asyncio.wait(tasks, timeout=self.config.loser_grace_seconds)
        for task in stragglers:
            task.cancel()
        if stragglers:
            logger.warning(f"{len(stragglers)} race candidate(s) ignored cancellation")
            await asyncio.gather(*stragglers, return_exceptions=True)

    @staticmethod
    def _collect(launched: list[_Candidate], winner: _Candidate | None) -> list[CancelledCandidate]:
        """Cost every candidate that did not win, exactly once."""
        losers: list[CancelledCandidate] = []
        for cand in launched:
            if cand is winner or cand.task is None:
                continue
            name = cand.backend.name
            task = cand.task
            if task.cancelled():
                losers.append(CancelledCandidate(backend=name, wasted_cost=0.0, reason="cancelled"))
                continue
            error = task.exception()
            if error is None:
                late = task.result()
                losers.append(
                    CancelledCandidate(
                        backend=name,
                        wasted_cost=late.cost,
                        reason="late_success",
                        usage=late.usage,
                        latency_ms=late.latency_ms,
                    )
                )
            elif isinstance(error, CandidateCancelled):
                losers.append(
                    CancelledCandidate(
                        backend=name,
                        wasted_cost=error.wasted_cost,
                        reason="cancelled" if cand.invoked else "not_launched",
                        usage=error.usage,
                    )
                )
            elif isinstance(error, ProviderError):
                losers.append(
                    CancelledCandidate(backend=name, wasted_cost=error.wasted_cost, reason="failed")
                )
        return losers

    def _fail(self, launched: list[_Candidate], task_id: str, tier: Tier | None) -> NoReturn:
        errors: list[ProviderError] = [c.task.exception() for c in launched]
        wasted = sum(e.wasted_cost for e in errors)
        self._emit(EventKind.COST_RECORDED, task_id, tier, cost=0.0, wasted_cost=wasted)
        if len(errors) == 1:
            raise errors[0]
        raise AllCandidatesFailed(errors)


__all__ = ["RacingDispatcher"]
