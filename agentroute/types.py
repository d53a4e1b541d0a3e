"""
Shared type definitions for agentroute.

Covers the request envelope, tiers, dispatch outcomes, retry decisions
and limiter admissions that flow between the routing components.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from .errors import ProviderError


class Provider(str, Enum):
    """Backend provider."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GITHUB = "github"  # GitHub Models, OpenAI-compatible
    OLLAMA = "ollama"


class Tier(str, Enum):
    """Capability tiers, declared from least to most capable."""

    LOCAL_SMALL = "local_small"
    LOCAL_LARGE = "local_large"
    CLOUD_STANDARD = "cloud_standard"
    CLOUD_PREMIUM = "cloud_premium"

    @property
    def rank(self) -> int:
        """Position in the capability order (0 = cheapest)."""
        return list(Tier).index(self)

    @property
    def is_local(self) -> bool:
        return self in (Tier.LOCAL_SMALL, Tier.LOCAL_LARGE)


class TaskDifficulty(str, Enum):
    """Difficulty of a single request."""

    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class MessageRole(str, Enum):
    """Role in conversation."""

    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """A single message in the conversation payload."""

    role: MessageRole
    content: str

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(role=MessageRole.ASSISTANT, content=content)

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class Constraints:
    """Generation constraints attached to a request."""

    max_tokens: int = 4096
    temperature: float | None = 0.3
    difficulty_hint: TaskDifficulty | None = None


@dataclass(frozen=True)
class RequestEnvelope:
    """
    One logical request to a language model.

    Created per call by the caller and never mutated afterwards. Token
    estimates drive rate-limit admission and cost-ceiling checks.
    """

    messages: tuple[Message, ...]
    estimated_input_tokens: int
    estimated_output_tokens: int
    system: str | None = None
    tools: tuple[dict[str, Any], ...] = ()
    constraints: Constraints = field(default_factory=Constraints)
    task_id: str = ""

    def __post_init__(self) -> None:
        if self.estimated_input_tokens < 0 or self.estimated_output_tokens < 0:
            raise ValueError("Token estimates must be non-negative")

    @classmethod
    def from_prompt(
        cls,
        prompt: str,
        system: str | None = None,
        constraints: Constraints | None = None,
        task_id: str = "",
        tools: tuple[dict[str, Any], ...] = (),
    ) -> RequestEnvelope:
        """Build a single-turn envelope, estimating tokens with tiktoken."""
        from .cost import estimate_messages_tokens

        constraints = constraints or Constraints()
        message = Message.user(prompt)
        return cls(
            messages=(message,),
            estimated_input_tokens=estimate_messages_tokens([message.to_dict()], system),
            estimated_output_tokens=constraints.max_tokens,
            system=system,
            tools=tools,
            constraints=constraints,
            task_id=task_id,
        )

    @property
    def prompt_text(self) -> str:
        """All user-visible text, used by difficulty heuristics."""
        return "\n".join(m.content for m in self.messages if m.role == MessageRole.USER)


@dataclass(frozen=True)
class Backend:
    """A concrete model endpoint with its pricing (USD per 1M tokens)."""

    name: str
    provider: Provider
    model: str
    input_cost_per_mtok: float = 0.0
    output_cost_per_mtok: float = 0.0
    base_url: str | None = None
    cache_write_cost_per_mtok: float = 0.0
    cache_read_cost_per_mtok: float = 0.0

    @property
    def is_free(self) -> bool:
        return not (
            self.input_cost_per_mtok
            or self.output_cost_per_mtok
            or self.cache_write_cost_per_mtok
            or self.cache_read_cost_per_mtok
        )

    def cost(
        self,
        input_tokens: int,
        output_tokens: int,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> float:
        return (
            input_tokens / 1_000_000 * self.input_cost_per_mtok
            + output_tokens / 1_000_000 * self.output_cost_per_mtok
            + cache_creation_tokens / 1_000_000 * self.cache_write_cost_per_mtok
            + cache_read_tokens / 1_000_000 * self.cache_read_cost_per_mtok
        )

    def cost_of(self, usage: Usage) -> float:
        return self.cost(
            usage.input_tokens,
            usage.output_tokens,
            usage.cache_creation_tokens,
            usage.cache_read_tokens,
        )


@dataclass(frozen=True)
class TierSpec:
    """A tier bound to the backends that serve it, in preference order."""

    tier: Tier
    backends: tuple[Backend, ...]

    def candidates(self, race: bool) -> tuple[Backend, ...]:
        return self.backends if race else self.backends[:1]

    def estimate_cost(self, envelope: RequestEnvelope, race: bool) -> float:
        """Worst-case cost: every raced candidate bills the full estimate."""
        return sum(
            b.cost(envelope.estimated_input_tokens, envelope.estimated_output_tokens)
            for b in self.candidates(race)
        )


@dataclass(frozen=True)
class Usage:
    """
    Token usage reported by a backend.

    `input_tokens` excludes prompt-cache tokens, which are billed at
    their own rates.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_input_tokens(self) -> int:
        """Every prompt token the provider processed, cached or not."""
        return self.input_tokens + self.cache_creation_tokens + self.cache_read_tokens

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.output_tokens


@dataclass(frozen=True)
class ToolUse:
    """Tool call requested by the model."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass(frozen=True)
class CancelledCandidate:
    """A race competitor that did not win, with whatever it cost."""

    backend: str
    wasted_cost: float
    reason: str  # "cancelled", "late_success", "failed", "not_launched"
    usage: Usage = field(default_factory=Usage)
    latency_ms: float | None = None


@dataclass(frozen=True)
class DispatchOutcome:
    """
    Result of a successful dispatch.

    `cost` belongs to the winner. `wasted_cost` sums cancelled competitors.
    `total_cost` and `total_attempts` are cumulative across every attempt
    the router made for this request.
    """

    backend: str
    content: str
    usage: Usage
    latency_ms: float
    cost: float
    tier: Tier | None = None
    tool_uses: tuple[ToolUse, ...] = ()
    stop_reason: str | None = None
    cancelled: tuple[CancelledCandidate, ...] = ()
    race_duration_ms: float = 0.0
    total_attempts: int = 1
    total_cost: float = 0.0

    @property
    def wasted_cost(self) -> float:
        return sum(c.wasted_cost for c in self.cancelled)

    @property
    def raced(self) -> bool:
        return bool(self.cancelled)

    @property
    def race_cost(self) -> float:
        """Winner plus wasted competitor cost for this single race."""
        return self.cost + self.wasted_cost

    @property
    def latency_improvement_ms(self) -> float | None:
        """How much sooner the race finished than its slowest finisher."""
        finished = [c.latency_ms for c in self.cancelled if c.latency_ms is not None]
        if not finished:
            return None
        return max(finished) - self.race_duration_ms


# Retry decisions


@dataclass(frozen=True)
class Retry:
    """Retry the same tier after `after` seconds."""

    after: float


@dataclass(frozen=True)
class Advance:
    """Escalate to the given tier."""

    tier: Tier


@dataclass(frozen=True)
class Fail:
    """Stop; the error is terminal."""

    error: ProviderError | Exception


RetryDecision = Union[Retry, Advance, Fail]


# Rate limiter admissions


@dataclass(frozen=True)
class Reservation:
    """Capacity optimistically reserved by a successful admission."""

    provider: str
    reservation_id: int
    input_tokens: int
    output_tokens: int
    timestamp: float


@dataclass(frozen=True)
class Admit:
    reservation: Reservation


@dataclass(frozen=True)
class MustWait:
    duration: float


Admission = Union[Admit, MustWait]


__all__ = [
    "Admission",
    "Admit",
    "Advance",
    "Backend",
    "CancelledCandidate",
    "Constraints",
    "DispatchOutcome",
    "Fail",
    "Message",
    "MessageRole",
    "MustWait",
    "Provider",
    "RequestEnvelope",
    "Reservation",
    "Retry",
    "RetryDecision",
    "TaskDifficulty",
    "Tier",
    "TierSpec",
    "ToolUse",
    "Usage",
]
