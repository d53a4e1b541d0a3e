"""
Error taxonomy for request orchestration.

Provider errors are classified into retry/advance/fail decisions by
ErrorClassifier; callers of `send` only ever see a fatal
configuration/authentication error or ExhaustedAllTiers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .types import Tier, Usage


class ErrorKind(str, Enum):
    """Classified kind of a provider failure."""

    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    MALFORMED = "malformed"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    CANCELLED = "cancelled"


# Higher wins when summarising several failures
SEVERITY: dict[ErrorKind, int] = {
    ErrorKind.CANCELLED: 0,
    ErrorKind.TRANSIENT: 1,
    ErrorKind.RATE_LIMITED: 2,
    ErrorKind.MALFORMED: 3,
    ErrorKind.AUTHENTICATION: 4,
    ErrorKind.CONFIGURATION: 5,
}


class OrchestrationError(Exception):
    """Base class for agentroute errors."""

    kind: ErrorKind = ErrorKind.CONFIGURATION

    def __init__(self, message: str):
        super().__init__(message)
        self.last_tier: Tier | None = None
        self.total_attempts: int = 0
        self.total_cost: float = 0.0

    def annotate(self, last_tier: Tier | None, total_attempts: int, total_cost: float) -> None:
        """Attach routing context before the error leaves `send`."""
        self.last_tier = last_tier
        self.total_attempts = total_attempts
        self.total_cost = total_cost


class ConfigurationError(OrchestrationError):
    """Invalid configuration; never retried."""

    kind = ErrorKind.CONFIGURATION


class CapacityExceededError(ConfigurationError):
    """A single request estimate is larger than the whole window allows."""

    def __init__(self, provider: str, dimension: str, requested: int, capacity: int):
        self.provider = provider
        self.dimension = dimension
        self.requested = requested
        self.capacity = capacity
        super().__init__(
            f"{provider}: {dimension} estimate {requested} exceeds window capacity {capacity}"
        )


class ProviderError(OrchestrationError):
    """A failed backend call."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, backend: str = "", wasted_cost: float = 0.0):
        super().__init__(message)
        self.backend = backend
        self.wasted_cost = wasted_cost


class TransientProviderError(ProviderError):
    """Timeout, 5xx or connection reset."""

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        backend: str = "",
        status: int | None = None,
        wasted_cost: float = 0.0,
    ):
        super().__init__(message, backend=backend, wasted_cost=wasted_cost)
        self.status = status


class ProviderTimeoutError(TransientProviderError):
    """The hard per-invocation timeout elapsed."""

    def __init__(self, backend: str, seconds: float, wasted_cost: float = 0.0):
        self.seconds = seconds
        super().__init__(
            f"Request to {backend} timed out after {seconds:g} seconds",
            backend=backend,
            wasted_cost=wasted_cost,
        )


class RateLimitedByProvider(ProviderError):
    """Provider (or the local limiter) asked us to slow down."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        backend: str = "",
        retry_after: float | None = None,
        wasted_cost: float = 0.0,
    ):
        super().__init__(message, backend=backend, wasted_cost=wasted_cost)
        self.retry_after = retry_after


class MalformedResponse(ProviderError):
    """The response could not be parsed."""

    kind = ErrorKind.MALFORMED


class AuthenticationError(ProviderError):
    """Missing or rejected credentials; never retried."""

    kind = ErrorKind.AUTHENTICATION


class ProviderConfigurationError(ProviderError):
    """The provider rejected the request shape (unknown model, bad params)."""

    kind = ErrorKind.CONFIGURATION


class CandidateCancelled(ProviderError):
    """A race candidate was cancelled; carries cost billed before cancellation."""

    kind = ErrorKind.CANCELLED

    def __init__(
        self,
        backend: str,
        wasted_cost: float = 0.0,
        input_tokens: int = 0,
        output_tokens: int = 0,
        usage: Usage | None = None,
    ):
        super().__init__(f"{backend} cancelled", backend=backend, wasted_cost=wasted_cost)
        # input_tokens counts every prompt token, cached ones included
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.usage = usage or Usage(input_tokens, output_tokens)


class AllCandidatesFailed(ProviderError):
    """Every candidate in a race failed."""

    def __init__(self, errors: list[ProviderError]):
        if not errors:
            raise ValueError("AllCandidatesFailed requires at least one error")
        self.errors = errors
        backends = ", ".join(e.backend or "?" for e in errors)
        super().__init__(
            f"All {len(errors)} candidates failed ({backends}): {self.primary}",
            backend=self.primary.backend,
            wasted_cost=sum(e.wasted_cost for e in errors),
        )

    @property
    def primary(self) -> ProviderError:
        """The most severe member; ties go to the earliest."""
        return max(self.errors, key=lambda e: SEVERITY[e.kind])

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return self.primary.kind


@dataclass(frozen=True)
class TierFailure:
    """How one tier failed before the router moved on."""

    tier: Tier
    attempts: int
    error: Exception | None
    skipped_for_cost: bool = False


class ExhaustedAllTiers(OrchestrationError):
    """No tier produced a usable response."""

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        failures: list[TierFailure],
        total_attempts: int,
        total_cost: float,
    ):
        self.failures = failures
        last = failures[-1] if failures else None
        self.last_error = last.error if last else None
        self.error_kind = (
            self.last_error.kind
            if isinstance(self.last_error, OrchestrationError)
            else None
        )
        tiers = " -> ".join(f.tier.value for f in failures) or "none"
        super().__init__(
            f"Exhausted all tiers ({tiers}) after {total_attempts} attempts, "
            f"${total_cost:.4f} spent: {self.last_error}"
        )
        self.annotate(last.tier if last else None, total_attempts, total_cost)


__all__ = [
    "AllCandidatesFailed",
    "AuthenticationError",
    "CandidateCancelled",
    "CapacityExceededError",
    "ConfigurationError",
    "ErrorKind",
    "ExhaustedAllTiers",
    "MalformedResponse",
    "OrchestrationError",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderTimeoutError",
    "RateLimitedByProvider",
    "SEVERITY",
    "TierFailure",
    "TransientProviderError",
]
