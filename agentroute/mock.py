"""
Scripted backend invoker for harness dry runs and tests.

Each backend name maps to a list of steps consumed one per call; the
last step repeats once the list runs out.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from .cancellation import CancellationToken, CancelledException
from .errors import CandidateCancelled, ProviderError
from .types import Backend, DispatchOutcome, RequestEnvelope, Usage


@dataclass
class ScriptStep:
    """
    What one call to a backend does.

    Attributes:
        delay: Seconds before the call resolves
        content: Response text on success
        usage: Reported usage on success
        error: Raised instead of succeeding, after `delay`
        billed_before_cancel: Cost reported if cancelled during `delay`
    """

    delay: float = 0.0
    content: str = "ok"
    usage: Usage = field(default_factory=lambda: Usage(input_tokens=100, output_tokens=50))
    error: ProviderError | None = None
    billed_before_cancel: float = 0.0

    @classmethod
    def succeed(cls, delay: float = 0.0, content: str = "ok", **kwargs) -> ScriptStep:
        return cls(delay=delay, content=content, **kwargs)

    @classmethod
    def fail(cls, error: ProviderError, delay: float = 0.0, **kwargs) -> ScriptStep:
        return cls(delay=delay, error=error, **kwargs)


@dataclass
class InvocationRecord:
    """One call seen by the scripted invoker."""

    backend: str
    task_id: str
    result: str = "pending"  # "success", "error", "cancelled"


class ScriptedInvoker:
    """
    BackendInvoker that replays scripts instead of doing I/O.

    Example:
        invoker = ScriptedInvoker({
            "a": [ScriptStep.fail(TransientProviderError("boom"), delay=0.1)],
            "b": [ScriptStep.succeed(delay=0.05)],
        })
    """

    def __init__(
        self,
        scripts: dict[str, list[ScriptStep]] | None = None,
        default: ScriptStep | None = None,
    ):
        self._scripts: dict[str, list[ScriptStep]] = {
            name: list(steps) for name, steps in (scripts or {}).items()
        }
        self._positions: dict[str, int] = {}
        self.default = default or ScriptStep()
        self.calls: list[InvocationRecord] = []

    def script(self, backend: str, *steps: ScriptStep) -> None:
        """Replace the script for `backend`."""
        self._scripts[backend] = list(steps)
        self._positions.pop(backend, None)

    def call_count(self, backend: str | None = None) -> int:
        if backend is None:
            return len(self.calls)
        return sum(1 for c in self.calls if c.backend == backend)

    def _next_step(self, backend: str) -> ScriptStep:
        steps = self._scripts.get(backend)
        if not steps:
            return self.default
        position = self._positions.get(backend, 0)
        self._positions[backend] = position + 1
        return steps[min(position, len(steps) - 1)]

    async def invoke(
        self,
        backend: Backend,
        envelope: RequestEnvelope,
        token: CancellationToken,
    ) -> DispatchOutcome:
        step = self._next_step(backend.name)
        record = InvocationRecord(backend=backend.name, task_id=envelope.task_id)
        self.calls.append(record)
        start = time.perf_counter()

        try:
            await token.run(asyncio.sleep(step.delay))
        except CancelledException:
            record.result = "cancelled"
            raise CandidateCancelled(backend.name, wasted_cost=step.billed_before_cancel) from None

        if step.error is not None:
            record.result = "error"
            raise step.error

        record.result = "success"
        return DispatchOutcome(
            backend=backend.name,
            content=step.content,
            usage=step.usage,
            latency_ms=(time.perf_counter() - start) * 1000,
            cost=backend.cost_of(step.usage),
        )


__all__ = ["InvocationRecord", "ScriptStep", "ScriptedInvoker"]
