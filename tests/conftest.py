"""
Pytest configuration and fixtures for agentroute tests.
"""

import pytest
import sys
from pathlib import Path

# Add project root to path so we can import the agentroute package
sys.path.insert(0, str(Path(__file__).parent.parent))

from agentroute.config import OrchestrationConfig, RaceConfig, RetryPolicy, RoutingConfig
from agentroute.events import CollectingEventSink
from agentroute.mock import ScriptedInvoker
from agentroute.types import (
    Backend,
    Constraints,
    Message,
    Provider,
    RequestEnvelope,
    TaskDifficulty,
    Tier,
    TierSpec,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Provide a clock the test advances by hand."""
    return FakeClock()


@pytest.fixture
def make_envelope():
    """Factory for envelopes with explicit token estimates."""

    def _make(
        prompt: str = "Fix typo in utils.py",
        input_tokens: int = 100,
        output_tokens: int = 50,
        hint: TaskDifficulty | None = None,
        task_id: str = "task-1",
    ) -> RequestEnvelope:
        return RequestEnvelope(
            messages=(Message.user(prompt),),
            estimated_input_tokens=input_tokens,
            estimated_output_tokens=output_tokens,
            constraints=Constraints(difficulty_hint=hint),
            task_id=task_id,
        )

    return _make


@pytest.fixture
def envelope(make_envelope):
    """Provide a small Easy request."""
    return make_envelope()


def _backend(name: str, provider: Provider, input_cost: float = 0.0, output_cost: float = 0.0):
    return Backend(
        name=name,
        provider=provider,
        model=name,
        input_cost_per_mtok=input_cost,
        output_cost_per_mtok=output_cost,
    )


@pytest.fixture
def backends():
    """Named test backends: two local, four cloud."""
    return {
        "small": _backend("small", Provider.OLLAMA),
        "large": _backend("large", Provider.OLLAMA),
        "std-a": _backend("std-a", Provider.ANTHROPIC, 3.0, 15.0),
        "std-b": _backend("std-b", Provider.OPENAI, 2.5, 10.0),
        "premium-a": _backend("premium-a", Provider.ANTHROPIC, 15.0, 75.0),
        "premium-b": _backend("premium-b", Provider.OPENAI, 15.0, 60.0),
    }


@pytest.fixture
def tier_table(backends):
    """Tier table built from the test backends."""
    return {
        Tier.LOCAL_SMALL: TierSpec(Tier.LOCAL_SMALL, (backends["small"],)),
        Tier.LOCAL_LARGE: TierSpec(Tier.LOCAL_LARGE, (backends["large"],)),
        Tier.CLOUD_STANDARD: TierSpec(
            Tier.CLOUD_STANDARD, (backends["std-a"], backends["std-b"])
        ),
        Tier.CLOUD_PREMIUM: TierSpec(
            Tier.CLOUD_PREMIUM, (backends["premium-a"], backends["premium-b"])
        ),
    }


@pytest.fixture
def fast_retry():
    """Retry policy with no backoff delay."""
    return RetryPolicy(base_delay=0.0)


@pytest.fixture
def fast_config(fast_retry):
    """Orchestration config for tests: no backoff, no provider limits."""
    return OrchestrationConfig(
        routing=RoutingConfig(),
        retry=fast_retry,
        race=RaceConfig(loser_grace_seconds=0.5),
        provider_limits=[],
    )


@pytest.fixture
def invoker():
    """Provide an empty scripted invoker (every backend succeeds)."""
    return ScriptedInvoker()


@pytest.fixture
def events():
    """Provide an in-memory event sink."""
    return CollectingEventSink()


# Markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "hypothesis: property-based tests"
    )
    config.addinivalue_line(
        "markers", "slow: tests that take >1s"
    )
    config.addinivalue_line(
        "markers", "security: security-related tests"
    )
