"""
Property-based tests for retry decisions and the tier cascade.

Property tests verify invariants:
- Backoff is non-decreasing in the attempt number and capped
- Fatal errors are never retried
- Tier orders are ascending and start at or above the requested tier
- The cascade never escalates more than allowed and never revisits a tier
"""

import sys
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from agentroute.config import RetryPolicy
from agentroute.error_classifier import ErrorClassifier
from agentroute.errors import (
    AuthenticationError,
    ConfigurationError,
    ErrorKind,
    MalformedResponse,
    RateLimitedByProvider,
    TransientProviderError,
)
from agentroute.router import CascadeState, advance_state, tier_order
from agentroute.types import Advance, Fail, Retry, Tier

policies = st.builds(
    RetryPolicy,
    base_delay=st.floats(min_value=0.0, max_value=5.0),
    multiplier=st.floats(min_value=1.0, max_value=4.0),
    max_delay=st.floats(min_value=0.0, max_value=60.0),
)

retryable_errors = st.sampled_from(
    [
        TransientProviderError("502"),
        RateLimitedByProvider("429"),
        RateLimitedByProvider("429", retry_after=3.0),
        MalformedResponse("bad json"),
    ]
)

tier_sets = st.sets(st.sampled_from(list(Tier)), min_size=1)


@pytest.mark.hypothesis
class TestBackoffProperties:
    """Property-based tests for backoff schedules."""

    @given(policies, st.integers(min_value=1, max_value=20))
    @settings(max_examples=200)
    def test_backoff_non_decreasing(self, policy, attempt):
        assert policy.backoff(attempt) <= policy.backoff(attempt + 1)

    @given(policies, st.integers(min_value=1, max_value=50))
    @settings(max_examples=200)
    def test_backoff_capped(self, policy, attempt):
        delay = policy.backoff(attempt)
        assert 0.0 <= delay <= policy.max_delay

    @given(
        policies,
        st.sampled_from([ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED, ErrorKind.MALFORMED]),
        st.integers(min_value=1, max_value=20),
    )
    @settings(max_examples=200)
    def test_classifier_backoff_non_decreasing(self, policy, kind, attempt):
        classifier = ErrorClassifier(policy)
        assert classifier.backoff(kind, attempt) <= classifier.backoff(kind, attempt + 1)


@pytest.mark.hypothesis
class TestDecisionProperties:
    """Property-based tests for ErrorClassifier.classify."""

    @given(
        st.sampled_from([AuthenticationError("401"), ConfigurationError("bad model")]),
        st.integers(min_value=1, max_value=10),
        st.sampled_from(list(Tier)),
    )
    @settings(max_examples=100)
    def test_fatal_never_retried(self, error, attempt, tier):
        decision = ErrorClassifier().classify(error, attempt, tier, Tier.CLOUD_PREMIUM)
        assert isinstance(decision, Fail)
        assert decision.error is error

    @given(retryable_errors, st.integers(min_value=1, max_value=10), st.booleans())
    @settings(max_examples=200)
    def test_retry_until_cap_then_advance_or_fail(self, error, attempt, has_next):
        classifier = ErrorClassifier(RetryPolicy(base_delay=0.0))
        next_tier = Tier.LOCAL_LARGE if has_next else None

        decision = classifier.classify(error, attempt, Tier.LOCAL_SMALL, next_tier)

        if attempt < classifier.max_attempts(error.kind):
            assert isinstance(decision, Retry)
            assert decision.after >= 0.0
        elif has_next:
            assert decision == Advance(Tier.LOCAL_LARGE)
        else:
            assert isinstance(decision, Fail)


@pytest.mark.hypothesis
class TestTierOrderProperties:
    """Property-based tests for tier_order."""

    @given(st.sampled_from(list(Tier)), tier_sets)
    @settings(max_examples=200)
    def test_order_is_ascending_subset(self, start, enabled):
        order = tier_order(start, enabled)
        assert order
        assert set(order) <= enabled
        assert [t.rank for t in order] == sorted(t.rank for t in order)
        assert len(order) == len(set(order))

    @given(st.sampled_from(list(Tier)), tier_sets)
    @settings(max_examples=200)
    def test_order_starts_at_or_above_start(self, start, enabled):
        order = tier_order(start, enabled)
        if any(t.rank >= start.rank for t in enabled):
            assert order[0].rank >= start.rank
            assert all(t in order for t in enabled if t.rank >= start.rank)
        else:
            assert order == [max(enabled, key=lambda t: t.rank)]


@pytest.mark.hypothesis
class TestCascadeProperties:
    """Property-based tests for advance_state driven by the classifier."""

    @given(
        st.lists(retryable_errors, min_size=1, max_size=40),
        st.integers(min_value=0, max_value=3),
    )
    @settings(max_examples=200)
    def test_cascade_bounds(self, failures, max_escalations):
        """Escalations stay within the limit and tiers are visited once, in order."""
        classifier = ErrorClassifier(RetryPolicy(base_delay=0.0))
        state = CascadeState.start(list(Tier), max_escalations)
        visited = [state.tier]

        for error in failures:
            if state.is_terminal:
                break
            decision = classifier.classify(error, state.attempts_on_tier + 1, state.tier, state.next_tier)
            state = advance_state(state, decision, error=error)
            if not state.is_terminal and state.tier != visited[-1]:
                visited.append(state.tier)

        assert state.escalations <= max_escalations
        assert [t.rank for t in visited] == sorted(t.rank for t in visited)
        assert len(visited) == len(set(visited))
        assert state.total_attempts == sum(f.attempts for f in state.failures) + state.attempts_on_tier * (
            not state.is_terminal
        )
