"""
Cascading tier router.

Try the cheapest tier that fits the task first and escalate on failure:
- Easy tasks start on a small local model
- Medium tasks start on a large local model
- Hard tasks start on the premium cloud tier

The cascade is an explicit state machine: `CascadeState` is immutable
and `advance_state` is the pure transition function, so the sequence of
tiers tried is deterministic given the per-attempt results.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import NoReturn, Union

from .classifier import HeuristicTaskClassifier, TaskClassifier
from .config import RoutingConfig
from .cost import get_model_costs
from .error_classifier import FATAL_KINDS, ErrorClassifier
from .errors import (
    AllCandidatesFailed,
    ConfigurationError,
    ExhaustedAllTiers,
    OrchestrationError,
    ProviderError,
    TierFailure,
)
from .events import EventKind, EventSink, LoggingEventSink, RoutingEvent
from .racing import RacingDispatcher
from .types import (
    Advance,
    Backend,
    DispatchOutcome,
    Fail,
    Provider,
    RequestEnvelope,
    Retry,
    RetryDecision,
    TaskDifficulty,
    Tier,
    TierSpec,
)

logger = logging.getLogger(__name__)


def make_backend(provider: Provider, model: str, base_url: str | None = None) -> Backend:
    """Backend priced from the model cost table."""
    costs = get_model_costs(model, provider)
    return Backend(
        name=f"{provider.value}/{model}",
        provider=provider,
        model=model,
        input_cost_per_mtok=costs["input"],
        output_cost_per_mtok=costs["output"],
        base_url=base_url,
        cache_write_cost_per_mtok=costs["cache_write"],
        cache_read_cost_per_mtok=costs["cache_read"],
    )


DEFAULT_TIER_TABLE: dict[Tier, TierSpec] = {
    Tier.LOCAL_SMALL: TierSpec(
        Tier.LOCAL_SMALL,
        (make_backend(Provider.OLLAMA, "qwen2.5-coder:7b"),),
    ),
    Tier.LOCAL_LARGE: TierSpec(
        Tier.LOCAL_LARGE,
        (make_backend(Provider.OLLAMA, "qwen2.5-coder:32b"),),
    ),
    Tier.CLOUD_STANDARD: TierSpec(
        Tier.CLOUD_STANDARD,
        (
            make_backend(Provider.ANTHROPIC, "claude-sonnet-4-20250514"),
            make_backend(Provider.OPENAI, "gpt-4o"),
        ),
    ),
    Tier.CLOUD_PREMIUM: TierSpec(
        Tier.CLOUD_PREMIUM,
        (
            make_backend(Provider.ANTHROPIC, "claude-opus-4-20250514"),
            make_backend(Provider.OPENAI, "o1"),
        ),
    ),
}

START_TIERS: dict[TaskDifficulty, Tier] = {
    TaskDifficulty.EASY: Tier.LOCAL_SMALL,
    TaskDifficulty.MEDIUM: Tier.LOCAL_LARGE,
    TaskDifficulty.HARD: Tier.CLOUD_PREMIUM,
}


def select_tier(difficulty: TaskDifficulty) -> Tier:
    """Starting tier for a difficulty."""
    return START_TIERS[difficulty]


def tier_order(start: Tier, enabled: Iterable[Tier]) -> list[Tier]:
    """
    Tiers to try, cheapest first, beginning at `start`.

    A disabled start tier begins at the next enabled tier above it, or
    at the highest enabled tier when nothing above is enabled.
    """
    ordered = sorted(set(enabled), key=lambda t: t.rank)
    if not ordered:
        return []
    above = [t for t in ordered if t.rank >= start.rank]
    return above or [ordered[-1]]


class CascadePhase(str, Enum):
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    TERMINAL_FAIL = "terminal_fail"


@dataclass(frozen=True)
class SkipTier:
    """Leave the current tier without attempting it (cost ceiling)."""

    estimate: float = 0.0


CascadeInput = Union[Retry, Advance, Fail, DispatchOutcome, SkipTier]


@dataclass(frozen=True)
class CascadeState:
    """Where the cascade is, and what it has spent getting there."""

    phase: CascadePhase
    tiers: tuple[Tier, ...]
    position: int = 0
    attempts_on_tier: int = 0
    total_attempts: int = 0
    escalations: int = 0
    max_escalations: int = 3
    spent: float = 0.0
    failures: tuple[TierFailure, ...] = ()
    last_error: Exception | None = None
    outcome: DispatchOutcome | None = None

    @classmethod
    def start(cls, tiers: Iterable[Tier], max_escalations: int = 3) -> CascadeState:
        tiers = tuple(tiers)
        return cls(
            phase=CascadePhase.ATTEMPTING if tiers else CascadePhase.TERMINAL_FAIL,
            tiers=tiers,
            max_escalations=max_escalations,
        )

    @property
    def tier(self) -> Tier | None:
        if self.position < len(self.tiers):
            return self.tiers[self.position]
        return None

    @property
    def next_tier(self) -> Tier | None:
        """Tier an escalation would move to, if escalation is still allowed."""
        if self.escalations >= self.max_escalations:
            return None
        if self.position + 1 < len(self.tiers):
            return self.tiers[self.position + 1]
        return None

    @property
    def is_terminal(self) -> bool:
        return self.phase != CascadePhase.ATTEMPTING


def advance_state(
    state: CascadeState,
    decision: CascadeInput,
    *,
    error: Exception | None = None,
    cost: float = 0.0,
) -> CascadeState:
    """
    Pure transition function of the cascade.

    Args:
        state: Current state (must be ATTEMPTING)
        decision: Outcome of the attempt, or the classifier's decision on its failure
        error: The failure the decision was made on
        cost: Cost the failed attempt incurred

    Returns:
        The next state
    """
    if state.is_terminal:
        raise ValueError(f"Cascade already finished ({state.phase.value})")
    tier = state.tier

    if isinstance(decision, DispatchOutcome):
        total_attempts = state.total_attempts + 1
        spent = state.spent + decision.race_cost
        outcome = replace(
            decision,
            tier=decision.tier or tier,
            total_attempts=total_attempts,
            total_cost=spent,
        )
        return replace(
            state,
            phase=CascadePhase.SUCCESS,
            attempts_on_tier=state.attempts_on_tier + 1,
            total_attempts=total_attempts,
            spent=spent,
            outcome=outcome,
        )

    if isinstance(decision, SkipTier):
        tier_error = state.last_error if state.attempts_on_tier else None
        failures = state.failures + (
            TierFailure(tier, state.attempts_on_tier, tier_error, skipped_for_cost=True),
        )
        position = state.position + 1
        exhausted = position >= len(state.tiers)
        return replace(
            state,
            phase=CascadePhase.TERMINAL_FAIL if exhausted else CascadePhase.ATTEMPTING,
            position=position,
            attempts_on_tier=0,
            failures=failures,
        )

    attempts_on_tier = state.attempts_on_tier + 1
    failed = replace(
        state,
        attempts_on_tier=attempts_on_tier,
        total_attempts=state.total_attempts + 1,
        spent=state.spent + cost,
        last_error=error if error is not None else state.last_error,
    )

    if isinstance(decision, Retry):
        return failed

    failure = TierFailure(tier, attempts_on_tier, error)
    if isinstance(decision, Advance):
        if decision.tier not in state.tiers[state.position + 1 :]:
            raise ValueError(f"Cannot advance from {tier} to {decision.tier}")
        return replace(
            failed,
            position=state.tiers.index(decision.tier),
            attempts_on_tier=0,
            escalations=state.escalations + 1,
            failures=state.failures + (failure,),
        )

    # Fail
    return replace(
        failed,
        phase=CascadePhase.TERMINAL_FAIL,
        failures=state.failures + (failure,),
        last_error=decision.error,
    )


class CascadingRouter:
    """
    Drive one request through the tier cascade.

    Example:
        router = CascadingRouter(dispatcher)
        outcome = await router.drive_to_completion(envelope, RoutingConfig())
    """

    def __init__(
        self,
        dispatcher: RacingDispatcher,
        classifier: TaskClassifier | None = None,
        error_classifier: ErrorClassifier | None = None,
        tier_table: dict[Tier, TierSpec] | None = None,
        event_sink: EventSink | None = None,
    ):
        self.dispatcher = dispatcher
        self.classifier = classifier or HeuristicTaskClassifier()
        self.error_classifier = error_classifier or ErrorClassifier()
        self.tier_table = dict(tier_table or DEFAULT_TIER_TABLE)
        self.event_sink = event_sink or LoggingEventSink()

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

    def plan(
        self, envelope: RequestEnvelope, config: RoutingConfig
    ) -> tuple[TaskDifficulty, list[Tier]]:
        """Difficulty and tier order for a request."""
        difficulty = self.classifier.classify(envelope)
        enabled = [t for t in config.enabled_tiers if t in self.tier_table]
        return difficulty, tier_order(select_tier(difficulty), enabled)

    async def drive_to_completion(
        self,
        envelope: RequestEnvelope,
        config: RoutingConfig | None = None,
    ) -> DispatchOutcome:
        """
        Run the cascade until success or a terminal failure.

        Raises:
            ConfigurationError: No enabled tier has backends
            AuthenticationError: Credentials missing or rejected (annotated)
            ExhaustedAllTiers: No tier produced a usable response
        """
        config = config or RoutingConfig()
        task_id = envelope.task_id
        difficulty, order = self.plan(envelope, config)
        if not order:
            raise ConfigurationError("No enabled tier has configured backends")

        logger.info(
            f"Routing {task_id or 'request'} ({difficulty.value}) via "
            f"{' -> '.join(t.value for t in order)}"
        )
        self._emit(
            EventKind.TIER_CHOSEN, task_id, order[0],
            difficulty=difficulty.value, order=[t.value for t in order],
        )

        state = CascadeState.start(order, config.max_tier_escalations)
        while not state.is_terminal:
            tier = state.tier
            spec = self.tier_table[tier]

            if config.cost_ceiling is not None:
                estimate = spec.estimate_cost(envelope, config.race_within_tier)
                if state.spent + estimate > config.cost_ceiling:
                    self._emit(
                        EventKind.TIER_SKIPPED_FOR_COST, task_id, tier,
                        estimate=estimate, spent=state.spent, ceiling=config.cost_ceiling,
                    )
                    state = advance_state(state, SkipTier(estimate))
                    continue

            try:
                outcome = await self.dispatcher.race(
                    spec.candidates(config.race_within_tier),
                    envelope,
                    task_id=task_id,
                    tier=tier,
                )
            except OrchestrationError as e:
                decision = self.error_classifier.classify(
                    e, state.attempts_on_tier + 1, tier, state.next_tier
                )
                cost = e.wasted_cost if isinstance(e, ProviderError) else 0.0
                state = advance_state(state, decision, error=e, cost=cost)
                await self._after_failure(decision, e, tier, state, task_id)
                continue

            state = advance_state(state, outcome)

        if state.phase == CascadePhase.SUCCESS:
            return state.outcome

        self._raise_terminal(state, task_id)

    async def _after_failure(
        self,
        decision: RetryDecision,
        error: OrchestrationError,
        tier: Tier,
        state: CascadeState,
        task_id: str,
    ) -> None:
        if isinstance(decision, Retry):
            logger.debug(
                f"{tier.value} attempt {state.attempts_on_tier} failed ({error.kind.value}), "
                f"retrying in {decision.after:.2f}s"
            )
            self._emit(
                EventKind.RETRY, task_id, tier,
                attempt=state.attempts_on_tier, delay=decision.after,
                error_kind=error.kind.value,
            )
            if decision.after > 0:
                await asyncio.sleep(decision.after)
        elif isinstance(decision, Advance):
            logger.info(f"Escalating {task_id or 'request'} from {tier.value} to {decision.tier.value}")
            self._emit(
                EventKind.TIER_ADVANCED, task_id, decision.tier,
                from_tier=tier.value, error_kind=error.kind.value,
            )

    def _raise_terminal(self, state: CascadeState, task_id: str) -> NoReturn:
        error = state.last_error
        last_tier = state.failures[-1].tier if state.failures else state.tier

        if isinstance(error, OrchestrationError) and error.kind in FATAL_KINDS:
            if isinstance(error, AllCandidatesFailed):
                error = error.primary
            error.annotate(last_tier, state.total_attempts, state.spent)
            raise error

        self._emit(
            EventKind.EXHAUSTED, task_id, last_tier,
            attempts=state.total_attempts, total_cost=state.spent,
            error_kind=error.kind.value if error is not None else None,
        )
        raise ExhaustedAllTiers(list(state.failures), state.total_attempts, state.spent)


__all__ = [
    "CascadeInput",
    "CascadePhase",
    "CascadeState",
    "CascadingRouter",
    "DEFAULT_TIER_TABLE",
    "START_TIERS",
    "SkipTier",
    "advance_state",
    "make_backend",
    "select_tier",
    "tier_order",
]
