"""
OrchestrationClient: the single entry point for model calls.

Composes the rate limiter, racing dispatcher and cascading router, and
owns the running metrics.

Usage:
    async with OrchestrationClient.from_env() as client:
        outcome = await client.send(RequestEnvelope.from_prompt("Fix typo in utils.py"))
        print(outcome.backend, outcome.total_cost)
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any

from .backends import BackendInvoker, ProviderInvoker
from .classifier import HeuristicTaskClassifier, TaskClassifier
from .config import OrchestrationConfig, RoutingConfig, credentials_from_env
from .error_classifier import ErrorClassifier
from .errors import ConfigurationError, OrchestrationError
from .events import EventSink, LoggingEventSink, RoutingEvent
from .metrics import MetricsAggregator, MetricsSnapshot
from .racing import RacingDispatcher
from .rate_limiter import RateLimiter, RateLimitStatus
from .router import DEFAULT_TIER_TABLE, CascadingRouter
from .types import DispatchOutcome, RequestEnvelope, Tier, TierSpec

logger = logging.getLogger(__name__)


class _FanoutSink:
    """Deliver each event to several sinks in order."""

    def __init__(self, *sinks: EventSink):
        self.sinks = sinks

    def emit(self, event: RoutingEvent) -> None:
        # A failing sink never fails the request or starves later sinks
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.warning(f"Event sink {type(sink).__name__} failed: {e}")


class OrchestrationClient:
    """
    Facade over rate limiting, racing and tier cascading.

    One client is shared by every concurrent request of a process; the
    limiter, the concurrency cap and the metrics are shared across them.

    Example:
        client = OrchestrationClient(config, invoker=ScriptedInvoker(...))
        outcome = await client.send(envelope, RoutingConfig.cloud_only())
        snapshot = client.snapshot_metrics()
    """

    def __init__(
        self,
        config: OrchestrationConfig | None = None,
        *,
        invoker: BackendInvoker | None = None,
        classifier: TaskClassifier | None = None,
        tier_table: dict[Tier, TierSpec] | None = None,
        event_sink: EventSink | None = None,
        limiter: RateLimiter | None = None,
    ):
        self.config = config or OrchestrationConfig()
        self.metrics = MetricsAggregator()
        self.limiter = limiter or RateLimiter(self.config.provider_limits)
        self.classifier = classifier or HeuristicTaskClassifier(self.config.classifier)
        self.error_classifier = ErrorClassifier(self.config.retry)
        self.tier_table = dict(tier_table or DEFAULT_TIER_TABLE)
        self.event_sink = _FanoutSink(self.metrics, event_sink or LoggingEventSink())

        self._invoker = invoker
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_requests)
        # One router per distinct credential set
        self._routers: dict[tuple[tuple[str, str], ...], CascadingRouter] = {}
        self._owned_invokers: list[ProviderInvoker] = []

    @classmethod
    def from_env(
        cls,
        env_file: Path | None = None,
        config_path: Path | None = None,
        **kwargs: Any,
    ) -> OrchestrationClient:
        """Build a client from the config file and API keys in the environment."""
        config = OrchestrationConfig.load(config_path)
        credentials = credentials_from_env(env_file)
        config.routing.provider_credentials = {
            **credentials,
            **config.routing.provider_credentials,
        }
        logger.debug(f"Loaded credentials for: {sorted(config.routing.provider_credentials)}")
        return cls(config, **kwargs)

    async def __aenter__(self) -> OrchestrationClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close HTTP clients opened by provider invokers."""
        for invoker in self._owned_invokers:
            await invoker.aclose()
        self._owned_invokers.clear()
        self._routers.clear()

    def validate(self, routing: RoutingConfig) -> None:
        """
        Reject routing options that can never succeed.

        Raises:
            ConfigurationError: On an invalid option
        """
        if not routing.enabled_tiers:
            raise ConfigurationError("enabled_tiers must not be empty")
        if not any(t in self.tier_table for t in routing.enabled_tiers):
            raise ConfigurationError("None of the enabled tiers has configured backends")
        if routing.cost_ceiling is not None and routing.cost_ceiling < 0:
            raise ConfigurationError("cost_ceiling must be non-negative")
        if routing.max_tier_escalations < 0:
            raise ConfigurationError("max_tier_escalations must be non-negative")

    def _router_for(self, routing: RoutingConfig) -> CascadingRouter:
        credentials = {
            **self.config.routing.provider_credentials,
            **routing.provider_credentials,
        }
        key = tuple(sorted(credentials.items()))
        router = self._routers.get(key)
        if router is not None:
            return router

        invoker = self._invoker
        if invoker is None:
            invoker = ProviderInvoker(
                credentials=credentials,
                timeout_seconds=self.config.invoke_timeout_seconds,
                ollama_base_url=self.config.ollama_base_url,
            )
            self._owned_invokers.append(invoker)

        dispatcher = RacingDispatcher(
            invoker,
            self.limiter,
            config=self.config.race,
            semaphore=self._semaphore,
            event_sink=self.event_sink,
        )
        router = CascadingRouter(
            dispatcher,
            classifier=self.classifier,
            error_classifier=self.error_classifier,
            tier_table=self.tier_table,
            event_sink=self.event_sink,
        )
        self._routers[key] = router
        return router

    async def send(
        self,
        envelope: RequestEnvelope,
        config: RoutingConfig | None = None,
    ) -> DispatchOutcome:
        """
        Route one request to completion.

        Args:
            envelope: The request
            config: Per-call routing options (defaults to the client's)

        Returns:
            The winning DispatchOutcome, with cumulative attempts and cost

        Raises:
            ConfigurationError: Invalid routing options or capacity
            AuthenticationError: Missing or rejected credentials
            ExhaustedAllTiers: No tier produced a usable response
        """
        routing = config or self.config.routing
        self.validate(routing)
        router = self._router_for(routing)

        start = time.perf_counter()
        try:
            outcome = await router.drive_to_completion(envelope, routing)
        except asyncio.CancelledError:
            self.metrics.record_cancelled()
            raise
        except OrchestrationError as e:
            self.metrics.record_failure(e)
            logger.warning(f"Request {envelope.task_id or ''} failed: {e}")
            raise

        latency_ms = (time.perf_counter() - start) * 1000
        self.metrics.record_success(outcome, latency_ms)
        return outcome

    def snapshot_metrics(self) -> MetricsSnapshot:
        """Point-in-time copy of the metrics; never waits on in-flight sends."""
        return self.metrics.snapshot()

    def rate_limit_status(self, provider: str) -> RateLimitStatus | None:
        return self.limiter.status(provider)


__all__ = ["OrchestrationClient"]
