"""
Configuration management for agentroute.

Retry/backoff, racing, routing and rate-limit settings are explicit
dataclasses so tests can run with near-zero delays.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv

from .types import Provider, Tier

DEFAULT_CONFIG_PATH = Path.home() / ".agentroute" / "config.json"

CREDENTIAL_ENV_VARS: dict[str, str] = {
    Provider.ANTHROPIC.value: "ANTHROPIC_API_KEY",
    Provider.OPENAI.value: "OPENAI_API_KEY",
    # Personal access token with the models:read scope
    Provider.GITHUB.value: "GITHUB_TOKEN",
}


@dataclass(frozen=True)
class ProviderLimits:
    """
    Static per-provider limits for one sliding window.

    Effective thresholds are scaled down by `conservative_fraction`.
    """

    provider: str
    requests_per_window: int
    input_tokens_per_window: int
    output_tokens_per_window: int
    window_seconds: float = 60.0
    conservative_fraction: float = 0.8

    def __post_init__(self) -> None:
        if not 0.0 < self.conservative_fraction <= 1.0:
            raise ValueError("conservative_fraction must be in (0, 1]")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

    def _scaled(self, limit: int) -> int:
        # epsilon keeps 50 * 0.8 from flooring to 39
        return int(limit * self.conservative_fraction + 1e-9)

    @property
    def max_requests(self) -> int:
        return self._scaled(self.requests_per_window)

    @property
    def max_input_tokens(self) -> int:
        return self._scaled(self.input_tokens_per_window)

    @property
    def max_output_tokens(self) -> int:
        return self._scaled(self.output_tokens_per_window)

    @classmethod
    def claude_sonnet_4(cls, conservative_fraction: float = 0.8) -> "ProviderLimits":
        """Published Sonnet 4 tier limits: 50 RPM, 30K ITPM, 8K OTPM."""
        return cls(
            provider=Provider.ANTHROPIC.value,
            requests_per_window=50,
            input_tokens_per_window=30_000,
            output_tokens_per_window=8_000,
            window_seconds=60.0,
            conservative_fraction=conservative_fraction,
        )


@dataclass
class RetryPolicy:
    """Per-error-class attempt caps and exponential backoff."""

    transient_max_attempts: int = 3
    rate_limit_max_attempts: int = 5
    malformed_max_attempts: int = 2
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        exponent = max(0, attempt - 1)
        return min(self.base_delay * (self.multiplier**exponent), self.max_delay)


@dataclass
class RaceConfig:
    """How candidates that must wait for the limiter are handled."""

    admission_policy: Literal["delay", "skip"] = "delay"
    max_admission_wait: float = 5.0
    # Losers get this long to report their cost after cancellation
    loser_grace_seconds: float = 2.0


@dataclass
class ClassifierThresholds:
    """Tunable difficulty heuristics."""

    easy_max_length: int = 200
    medium_min_length: int = 500
    hard_min_length: int = 1000
    easy_max_files: int = 1
    medium_min_files: int = 3
    hard_min_files: int = 6


@dataclass
class RoutingConfig:
    """
    Per-call routing options.

    `provider_credentials` maps provider name to an API key; missing
    entries fall back to the environment.
    """

    enabled_tiers: frozenset[Tier] = field(default_factory=lambda: frozenset(Tier))
    race_within_tier: bool = True
    cost_ceiling: float | None = None
    max_tier_escalations: int = 3
    provider_credentials: dict[str, str] = field(default_factory=dict)

    @classmethod
    def cloud_only(cls, **kwargs) -> "RoutingConfig":
        """Skip local tiers entirely."""
        return cls(
            enabled_tiers=frozenset({Tier.CLOUD_STANDARD, Tier.CLOUD_PREMIUM}),
            **kwargs,
        )

    @classmethod
    def local_only(cls, **kwargs) -> "RoutingConfig":
        return cls(
            enabled_tiers=frozenset({Tier.LOCAL_SMALL, Tier.LOCAL_LARGE}),
            **kwargs,
        )


@dataclass
class OrchestrationConfig:
    """
    Complete orchestration configuration.

    Loaded once at client construction.
    """

    routing: RoutingConfig = field(default_factory=RoutingConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    race: RaceConfig = field(default_factory=RaceConfig)
    classifier: ClassifierThresholds = field(default_factory=ClassifierThresholds)
    provider_limits: list[ProviderLimits] = field(
        default_factory=lambda: [ProviderLimits.claude_sonnet_4()]
    )
    invoke_timeout_seconds: float = 120.0
    max_concurrent_requests: int = 16
    ollama_base_url: str = "http://localhost:11434"

    @classmethod
    def load(cls, path: Path | None = None) -> "OrchestrationConfig":
        """Load configuration from file."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        routing_data = dict(data.get("routing", {}))
        if "enabled_tiers" in routing_data:
            routing_data["enabled_tiers"] = frozenset(
                Tier(t) for t in routing_data["enabled_tiers"]
            )

        limits_data = data.get("provider_limits")
        return cls(
            routing=RoutingConfig(**routing_data),
            retry=RetryPolicy(**data.get("retry", {})),
            race=RaceConfig(**data.get("race", {})),
            classifier=ClassifierThresholds(**data.get("classifier", {})),
            provider_limits=(
                [ProviderLimits(**item) for item in limits_data]
                if limits_data is not None
                else [ProviderLimits.claude_sonnet_4()]
            ),
            invoke_timeout_seconds=data.get("invoke_timeout_seconds", 120.0),
            max_concurrent_requests=data.get("max_concurrent_requests", 16),
            ollama_base_url=data.get("ollama_base_url", "http://localhost:11434"),
        )

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file. Credentials are never written."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        path.parent.mkdir(parents=True, exist_ok=True)

        routing = asdict(self.routing)
        routing["enabled_tiers"] = sorted(t.value for t in self.routing.enabled_tiers)
        routing.pop("provider_credentials")

        with open(path, "w") as f:
            json.dump(
                {
                    "routing": routing,
                    "retry": asdict(self.retry),
                    "race": asdict(self.race),
                    "classifier": asdict(self.classifier),
                    "provider_limits": [asdict(lim) for lim in self.provider_limits],
                    "invoke_timeout_seconds": self.invoke_timeout_seconds,
                    "max_concurrent_requests": self.max_concurrent_requests,
                    "ollama_base_url": self.ollama_base_url,
                },
                f,
                indent=2,
            )


def credentials_from_env(env_file: Path | None = None) -> dict[str, str]:
    """
    Collect provider API keys from the environment.

    A `.env` file in the working directory (or `env_file`) is loaded
    first; existing environment variables win.
    """
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    credentials: dict[str, str] = {}
    for provider, var in CREDENTIAL_ENV_VARS.items():
        value = os.environ.get(var)
        if value:
            credentials[provider] = value
    return credentials


__all__ = [
    "ClassifierThresholds",
    "CREDENTIAL_ENV_VARS",
    "DEFAULT_CONFIG_PATH",
    "OrchestrationConfig",
    "ProviderLimits",
    "RaceConfig",
    "RetryPolicy",
    "RoutingConfig",
    "credentials_from_env",
]
