"""
Retry / advance / fail decisions for failed tier attempts.

The classifier is pure: it looks at the error, how many attempts the
current tier has used and which tier comes next, and returns a
RetryDecision. Sleeping and escalating are the router's job.
"""

from __future__ import annotations

import logging

from .config import RetryPolicy
from .errors import AllCandidatesFailed, ErrorKind, OrchestrationError, RateLimitedByProvider
from .types import Advance, Fail, Retry, RetryDecision, Tier

logger = logging.getLogger(__name__)

FATAL_KINDS = frozenset({ErrorKind.AUTHENTICATION, ErrorKind.CONFIGURATION})


class ErrorClassifier:
    """
    Map a failure onto Retry(after), Advance(tier) or Fail(error).

    Example:
        classifier = ErrorClassifier(RetryPolicy(base_delay=0.0))
        decision = classifier.classify(err, attempt_count=1, tier=Tier.LOCAL_SMALL,
                                       next_tier=Tier.LOCAL_LARGE)
    """

    def __init__(self, policy: RetryPolicy | None = None):
        self.policy = policy or RetryPolicy()

    def max_attempts(self, kind: ErrorKind) -> int:
        """Attempt cap on one tier for an error kind (0 = never retried)."""
        if kind in FATAL_KINDS:
            return 0
        if kind == ErrorKind.MALFORMED:
            return self.policy.malformed_max_attempts
        if kind == ErrorKind.RATE_LIMITED:
            return self.policy.rate_limit_max_attempts
        return self.policy.transient_max_attempts

    def backoff(self, kind: ErrorKind, attempt: int) -> float:
        """Delay before the next attempt; non-decreasing in `attempt`."""
        if kind == ErrorKind.MALFORMED:
            # A re-ask is not load-related, no need to wait
            return 0.0
        return self.policy.backoff(attempt)

    def classify(
        self,
        error: Exception,
        attempt_count: int,
        tier: Tier,
        next_tier: Tier | None = None,
    ) -> RetryDecision:
        """
        Decide what to do after `attempt_count` failed attempts on `tier`.

        Args:
            error: The failure from the last attempt
            attempt_count: Attempts made on this tier, including the failed one
            tier: Tier that failed
            next_tier: Next tier the router would escalate to, if any

        Returns:
            Retry, Advance or Fail
        """
        if not isinstance(error, OrchestrationError):
            # Programming errors and unknown exceptions are not retried
            return Fail(error)

        kind = error.kind
        if kind in FATAL_KINDS:
            return Fail(error)

        if attempt_count < self.max_attempts(kind):
            return Retry(after=self._retry_delay(error, kind, attempt_count))

        if next_tier is None:
            logger.debug(f"{tier.value}: {kind.value} retries exhausted on final tier")
            return Fail(error)
        return Advance(next_tier)

    def _retry_delay(self, error: OrchestrationError, kind: ErrorKind, attempt: int) -> float:
        delay = self.backoff(kind, attempt)
        retry_after = _retry_after(error)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


def _retry_after(error: OrchestrationError) -> float | None:
    """Shortest provider-supplied retry-after hint carried by the error."""
    if isinstance(error, RateLimitedByProvider):
        return error.retry_after
    if isinstance(error, AllCandidatesFailed):
        hints = [
            e.retry_after
            for e in error.errors
            if isinstance(e, RateLimitedByProvider) and e.retry_after is not None
        ]
        return min(hints) if hints else None
    return None


__all__ = ["ErrorClassifier", "FATAL_KINDS"]
