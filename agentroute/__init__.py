"""
agentroute: request orchestration for AI coding-agent evaluation.

For every outbound model call, decides which backend tier to use, how
many backends to race, how to stay under provider rate limits, and
when to retry or escalate.

Implements:
- Sliding-window rate limiting per provider
- Racing dispatch with per-candidate cancellation and wasted-cost accounting
- Local-first tier cascading with a cost ceiling
- Retry/backoff classification of provider errors
"""

__version__ = "0.1.0"

# Facade
from .client import OrchestrationClient

# Components
from .backends import (
    AnthropicAdapter,
    BackendInvoker,
    GitHubAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    ProviderInvoker,
)
from .cancellation import CancellationToken, CancelledException
from .classifier import FixedTaskClassifier, HeuristicTaskClassifier, TaskClassifier
from .error_classifier import ErrorClassifier
from .racing import RacingDispatcher
from .rate_limiter import RateLimiter, RateLimitStatus
from .router import (
    DEFAULT_TIER_TABLE,
    CascadePhase,
    CascadeState,
    CascadingRouter,
    advance_state,
    select_tier,
    tier_order,
)

# Configuration
from .config import (
    ClassifierThresholds,
    OrchestrationConfig,
    ProviderLimits,
    RaceConfig,
    RetryPolicy,
    RoutingConfig,
    credentials_from_env,
)

# Errors
from .errors import (
    AllCandidatesFailed,
    AuthenticationError,
    CandidateCancelled,
    CapacityExceededError,
    ConfigurationError,
    ErrorKind,
    ExhaustedAllTiers,
    MalformedResponse,
    OrchestrationError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedByProvider,
    TierFailure,
    TransientProviderError,
)

# Events and metrics
from .events import (
    CollectingEventSink,
    EventKind,
    EventSink,
    JsonlEventSink,
    JsonlSinkConfig,
    LoggingEventSink,
    RoutingEvent,
)
from .metrics import MetricsAggregator, MetricsSnapshot

# Testing support
from .mock import ScriptedInvoker, ScriptStep

# Types
from .types import (
    Admit,
    Advance,
    Backend,
    CancelledCandidate,
    Constraints,
    DispatchOutcome,
    Fail,
    Message,
    MustWait,
    Provider,
    RequestEnvelope,
    Retry,
    TaskDifficulty,
    Tier,
    TierSpec,
    Usage,
)

__all__ = [
    "__version__",
    # Facade
    "OrchestrationClient",
    # Components
    "AnthropicAdapter",
    "BackendInvoker",
    "CancellationToken",
    "CancelledException",
    "CascadePhase",
    "CascadeState",
    "CascadingRouter",
    "DEFAULT_TIER_TABLE",
    "ErrorClassifier",
    "FixedTaskClassifier",
    "GitHubAdapter",
    "HeuristicTaskClassifier",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ProviderInvoker",
    "RacingDispatcher",
    "RateLimitStatus",
    "RateLimiter",
    "TaskClassifier",
    "advance_state",
    "select_tier",
    "tier_order",
    # Configuration
    "ClassifierThresholds",
    "OrchestrationConfig",
    "ProviderLimits",
    "RaceConfig",
    "RetryPolicy",
    "RoutingConfig",
    "credentials_from_env",
    # Errors
    "AllCandidatesFailed",
    "AuthenticationError",
    "CandidateCancelled",
    "CapacityExceededError",
    "ConfigurationError",
    "ErrorKind",
    "ExhaustedAllTiers",
    "MalformedResponse",
    "OrchestrationError",
    "ProviderError",
    "ProviderTimeoutError",
    "RateLimitedByProvider",
    "TierFailure",
    "TransientProviderError",
    # Events and metrics
    "CollectingEventSink",
    "EventKind",
    "EventSink",
    "JsonlEventSink",
    "JsonlSinkConfig",
    "LoggingEventSink",
    "MetricsAggregator",
    "MetricsSnapshot",
    "RoutingEvent",
    # Testing support
    "ScriptStep",
    "ScriptedInvoker",
    # Types
    "Admit",
    "Advance",
    "Backend",
    "CancelledCandidate",
    "Constraints",
    "DispatchOutcome",
    "Fail",
    "Message",
    "MustWait",
    "Provider",
    "RequestEnvelope",
    "Retry",
    "TaskDifficulty",
    "Tier",
    "TierSpec",
    "Usage",
]
