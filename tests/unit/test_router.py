"""
Unit tests for the cascading tier router.

Tests tier selection, the pure cascade transition function and the
router's handling of retries, escalation, cost skips and fatal errors.
"""

import pytest

from agentroute.classifier import FixedTaskClassifier
from agentroute.config import RaceConfig, RetryPolicy, RoutingConfig
from agentroute.error_classifier import ErrorClassifier
from agentroute.errors import (
    AuthenticationError,
    ExhaustedAllTiers,
    MalformedResponse,
    TransientProviderError,
)
from agentroute.events import EventKind
from agentroute.mock import ScriptedInvoker, ScriptStep
from agentroute.racing import RacingDispatcher
from agentroute.rate_limiter import RateLimiter
from agentroute.router import (
    DEFAULT_TIER_TABLE,
    CascadePhase,
    CascadeState,
    CascadingRouter,
    SkipTier,
    advance_state,
    make_backend,
    select_tier,
    tier_order,
)
from agentroute.types import (
    Advance,
    DispatchOutcome,
    Fail,
    Provider,
    Retry,
    TaskDifficulty,
    Tier,
    Usage,
)

ALL_TIERS = frozenset(Tier)


def outcome(backend: str = "small", cost: float = 0.0) -> DispatchOutcome:
    return DispatchOutcome(backend=backend, content="ok", usage=Usage(10, 5), latency_ms=1.0, cost=cost)


def make_router(invoker, tier_table, events, difficulty=None, policy=None):
    dispatcher = RacingDispatcher(
        invoker,
        RateLimiter(),
        config=RaceConfig(loser_grace_seconds=0.5),
        event_sink=events,
    )
    return CascadingRouter(
        dispatcher,
        classifier=FixedTaskClassifier(difficulty) if difficulty else None,
        error_classifier=ErrorClassifier(policy or RetryPolicy(base_delay=0.0)),
        tier_table=tier_table,
        event_sink=events,
    )


class TestTierSelection:
    """Tests for start tier and tier order."""

    def test_start_tiers(self):
        """Easy, Medium and Hard start on their own tiers."""
        assert select_tier(TaskDifficulty.EASY) == Tier.LOCAL_SMALL
        assert select_tier(TaskDifficulty.MEDIUM) == Tier.LOCAL_LARGE
        assert select_tier(TaskDifficulty.HARD) == Tier.CLOUD_PREMIUM

    def test_order_from_start(self):
        """Tiers run cheapest first from the start tier."""
        assert tier_order(Tier.LOCAL_LARGE, ALL_TIERS) == [
            Tier.LOCAL_LARGE,
            Tier.CLOUD_STANDARD,
            Tier.CLOUD_PREMIUM,
        ]

    def test_disabled_start_moves_up(self):
        """A disabled start tier begins at the next enabled tier above."""
        enabled = RoutingConfig.cloud_only().enabled_tiers
        assert tier_order(Tier.LOCAL_SMALL, enabled) == [Tier.CLOUD_STANDARD, Tier.CLOUD_PREMIUM]

    def test_nothing_above_uses_highest_enabled(self):
        """Hard tasks on a local-only config use the best local tier."""
        enabled = RoutingConfig.local_only().enabled_tiers
        assert tier_order(Tier.CLOUD_PREMIUM, enabled) == [Tier.LOCAL_LARGE]

    def test_empty_enabled(self):
        assert tier_order(Tier.LOCAL_SMALL, []) == []

    def test_default_table_prices_cloud_backends(self):
        """Cloud backends carry prices; local backends are free."""
        standard = DEFAULT_TIER_TABLE[Tier.CLOUD_STANDARD].backends
        assert all(b.input_cost_per_mtok > 0 for b in standard)
        assert DEFAULT_TIER_TABLE[Tier.LOCAL_SMALL].backends[0].cost(1000, 1000) == 0.0

    def test_make_backend_name(self):
        backend = make_backend(Provider.OPENAI, "gpt-4o")
        assert backend.name == "openai/gpt-4o"
        assert backend.output_cost_per_mtok == 10.0

    def test_make_backend_prices_by_provider(self):
        sonnet = make_backend(Provider.ANTHROPIC, "claude-sonnet-4-5-20250929")
        assert sonnet.input_cost_per_mtok == 3.0
        assert sonnet.cache_write_cost_per_mtok == pytest.approx(3.75)
        assert sonnet.cache_read_cost_per_mtok == pytest.approx(0.30)
        assert make_backend(Provider.OLLAMA, "llama3.1:8b").is_free


class TestAdvanceState:
    """Tests for the pure cascade transition function."""

    def test_retry_counts_attempts(self):
        state = CascadeState.start([Tier.LOCAL_SMALL, Tier.LOCAL_LARGE])
        error = TransientProviderError("502")

        state = advance_state(state, Retry(0.0), error=error, cost=0.01)

        assert state.phase == CascadePhase.ATTEMPTING
        assert state.tier == Tier.LOCAL_SMALL
        assert state.attempts_on_tier == 1
        assert state.total_attempts == 1
        assert state.spent == pytest.approx(0.01)
        assert state.last_error is error

    def test_advance_moves_and_records_failure(self):
        state = CascadeState.start([Tier.LOCAL_SMALL, Tier.LOCAL_LARGE])
        error = TransientProviderError("502")
        state = advance_state(state, Retry(0.0), error=error)

        state = advance_state(state, Advance(Tier.LOCAL_LARGE), error=error)

        assert state.tier == Tier.LOCAL_LARGE
        assert state.attempts_on_tier == 0
        assert state.total_attempts == 2
        assert state.escalations == 1
        assert [(f.tier, f.attempts) for f in state.failures] == [(Tier.LOCAL_SMALL, 2)]

    def test_advance_backwards_rejected(self):
        state = CascadeState.start([Tier.LOCAL_SMALL, Tier.LOCAL_LARGE])
        with pytest.raises(ValueError):
            advance_state(state, Advance(Tier.LOCAL_SMALL))

    def test_fail_is_terminal(self):
        error = AuthenticationError("401")
        state = advance_state(
            CascadeState.start([Tier.CLOUD_STANDARD]), Fail(error), error=error
        )
        assert state.phase == CascadePhase.TERMINAL_FAIL
        assert state.last_error is error
        with pytest.raises(ValueError):
            advance_state(state, Retry(0.0))

    def test_success_sets_cumulative_totals(self):
        state = CascadeState.start([Tier.LOCAL_SMALL, Tier.LOCAL_LARGE])
        state = advance_state(state, Retry(0.0), error=TransientProviderError("x"), cost=0.5)

        state = advance_state(state, outcome(cost=0.25))

        assert state.phase == CascadePhase.SUCCESS
        assert state.outcome.total_attempts == 2
        assert state.outcome.total_cost == pytest.approx(0.75)
        assert state.outcome.tier == Tier.LOCAL_SMALL

    def test_skip_does_not_count_attempt_or_escalation(self):
        state = CascadeState.start([Tier.LOCAL_LARGE, Tier.CLOUD_STANDARD])

        state = advance_state(state, SkipTier(estimate=2.0))

        assert state.tier == Tier.CLOUD_STANDARD
        assert state.total_attempts == 0
        assert state.escalations == 0
        assert state.failures[0].skipped_for_cost
        assert state.failures[0].error is None

    def test_skip_last_tier_is_terminal(self):
        state = advance_state(CascadeState.start([Tier.CLOUD_PREMIUM]), SkipTier())
        assert state.phase == CascadePhase.TERMINAL_FAIL

    def test_next_tier_respects_escalation_limit(self):
        state = CascadeState.start(list(Tier), max_escalations=1)
        assert state.next_tier == Tier.LOCAL_LARGE
        state = advance_state(state, Advance(Tier.LOCAL_LARGE))
        assert state.next_tier is None

    def test_empty_order_is_terminal(self):
        assert CascadeState.start([]).is_terminal


class TestCascadingRouter:
    """Tests for drive_to_completion."""

    @pytest.mark.asyncio
    async def test_easy_task_succeeds_on_first_tier(self, tier_table, envelope, events):
        router = make_router(ScriptedInvoker(), tier_table, events)

        result = await router.drive_to_completion(envelope, RoutingConfig())

        assert result.tier == Tier.LOCAL_SMALL
        assert result.total_attempts == 1
        (chosen,) = events.of_kind(EventKind.TIER_CHOSEN)
        assert chosen.data["difficulty"] == "easy"

    @pytest.mark.asyncio
    async def test_retries_emit_events(self, tier_table, envelope, events):
        invoker = ScriptedInvoker(
            {"small": [ScriptStep.fail(MalformedResponse("bad")), ScriptStep.succeed()]}
        )
        router = make_router(invoker, tier_table, events)

        result = await router.drive_to_completion(envelope, RoutingConfig())

        assert result.tier == Tier.LOCAL_SMALL
        assert result.total_attempts == 2
        (retry,) = events.of_kind(EventKind.RETRY)
        assert retry.data["error_kind"] == "malformed"

    @pytest.mark.asyncio
    async def test_fatal_error_surfaces_annotated(self, tier_table, make_envelope, events):
        """Authentication failures are not retried or escalated."""
        invoker = ScriptedInvoker(
            {
                "std-a": [ScriptStep.fail(AuthenticationError("401", backend="std-a"))],
                "std-b": [ScriptStep.fail(TransientProviderError("502", backend="std-b"))],
            }
        )
        router = make_router(invoker, tier_table, events, TaskDifficulty.EASY)

        with pytest.raises(AuthenticationError) as exc_info:
            await router.drive_to_completion(make_envelope(), RoutingConfig.cloud_only())

        assert exc_info.value.last_tier == Tier.CLOUD_STANDARD
        assert exc_info.value.total_attempts == 1
        assert invoker.call_count() == 2
        assert events.of_kind(EventKind.TIER_ADVANCED) == []

    @pytest.mark.asyncio
    async def test_exhausted_all_tiers(self, tier_table, make_envelope, events):
        """Every tier failing ends in ExhaustedAllTiers, never a stall."""
        error = TransientProviderError("502", wasted_cost=0.001)
        invoker = ScriptedInvoker(default=ScriptStep.fail(error))
        router = make_router(invoker, tier_table, events)

        with pytest.raises(ExhaustedAllTiers) as exc_info:
            await router.drive_to_completion(
                make_envelope(hint=TaskDifficulty.MEDIUM), RoutingConfig()
            )

        exhausted = exc_info.value
        assert [f.tier for f in exhausted.failures] == [
            Tier.LOCAL_LARGE,
            Tier.CLOUD_STANDARD,
            Tier.CLOUD_PREMIUM,
        ]
        assert exhausted.total_attempts == 9
        assert exhausted.last_tier == Tier.CLOUD_PREMIUM
        assert exhausted.error_kind.value == "transient"
        assert exhausted.total_cost > 0
        assert len(events.of_kind(EventKind.EXHAUSTED)) == 1

    @pytest.mark.asyncio
    async def test_escalation_limit(self, tier_table, envelope, events):
        """max_tier_escalations=0 keeps the cascade on its start tier."""
        invoker = ScriptedInvoker(default=ScriptStep.fail(TransientProviderError("502")))
        router = make_router(invoker, tier_table, events)

        with pytest.raises(ExhaustedAllTiers) as exc_info:
            await router.drive_to_completion(envelope, RoutingConfig(max_tier_escalations=0))

        assert exc_info.value.total_attempts == 3
        assert [f.tier for f in exc_info.value.failures] == [Tier.LOCAL_SMALL]

    @pytest.mark.asyncio
    async def test_cost_ceiling_skips_expensive_tier(self, tier_table, make_envelope, events):
        """A tier whose estimate breaks the ceiling is skipped without a call."""
        invoker = ScriptedInvoker(
            {"small": [ScriptStep.fail(TransientProviderError("502"))]}
        )
        router = make_router(invoker, tier_table, events, TaskDifficulty.HARD)
        envelope = make_envelope(input_tokens=100_000, output_tokens=10_000)

        with pytest.raises(ExhaustedAllTiers) as exc_info:
            await router.drive_to_completion(envelope, RoutingConfig(cost_ceiling=0.01))

        assert invoker.call_count() == 0
        (skip,) = events.of_kind(EventKind.TIER_SKIPPED_FOR_COST)
        assert skip.tier == Tier.CLOUD_PREMIUM
        assert skip.data["ceiling"] == 0.01
        assert exc_info.value.failures[0].skipped_for_cost

    @pytest.mark.asyncio
    async def test_single_candidate_without_racing(self, tier_table, make_envelope, events):
        """race_within_tier=False dispatches only the first backend."""
        invoker = ScriptedInvoker()
        router = make_router(invoker, tier_table, events, TaskDifficulty.HARD)

        result = await router.drive_to_completion(
            make_envelope(), RoutingConfig(race_within_tier=False)
        )

        assert result.backend == "premium-a"
        assert invoker.call_count() == 1

    def test_plan_ignores_tiers_without_backends(self, tier_table, envelope, events):
        table = {t: spec for t, spec in tier_table.items() if t != Tier.LOCAL_SMALL}
        router = make_router(ScriptedInvoker(), table, events)

        difficulty, order = router.plan(envelope, RoutingConfig())

        assert difficulty == TaskDifficulty.EASY
        assert order[0] == Tier.LOCAL_LARGE
