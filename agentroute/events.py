"""
Structured routing events and the sinks that receive them.

Events are emitted for every routing decision a caller may want to
audit: tier choice, cost skips, escalation, race outcomes, retries and
recorded cost.

Usage:
    from agentroute.events import JsonlEventSink, JsonlSinkConfig

    sink = JsonlEventSink(JsonlSinkConfig(log_path="~/.agentroute/events.jsonl"))
    client = OrchestrationClient(event_sink=sink)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .types import Tier

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of routing events."""

    TIER_CHOSEN = "tier_chosen"
    TIER_SKIPPED_FOR_COST = "tier_skipped_for_cost"
    TIER_ADVANCED = "tier_advanced"
    CANDIDATE_SKIPPED = "candidate_skipped"
    CANDIDATE_DELAYED = "candidate_delayed"
    RACE_OUTCOME = "race_outcome"
    RETRY = "retry"
    COST_RECORDED = "cost_recorded"
    EXHAUSTED = "exhausted"


class RoutingEvent(BaseModel):
    """One routing decision."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    task_id: str = ""
    tier: Tier | None = None
    backend: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventSink(Protocol):
    """Receiver for routing events."""

    def emit(self, event: RoutingEvent) -> None:
        ...


# Kinds worth INFO; the rest go to DEBUG
_INFO_KINDS = frozenset(
    {
        EventKind.TIER_CHOSEN,
        EventKind.TIER_SKIPPED_FOR_COST,
        EventKind.TIER_ADVANCED,
        EventKind.EXHAUSTED,
    }
)


class LoggingEventSink:
    """Writes events to the standard logging tree."""

    def __init__(self, name: str = "agentroute.events"):
        self._logger = logging.getLogger(name)

    def emit(self, event: RoutingEvent) -> None:
        level = logging.INFO if event.kind in _INFO_KINDS else logging.DEBUG
        if not self._logger.isEnabledFor(level):
            return
        where = event.tier.value if event.tier else "-"
        details = " ".join(f"{k}={v}" for k, v in event.data.items())
        self._logger.log(
            level,
            f"[{event.task_id or '-'}] {event.kind.value} tier={where} "
            f"backend={event.backend or '-'} {details}".rstrip(),
        )


class CollectingEventSink:
    """Keeps events in memory, for dry runs and assertions."""

    def __init__(self) -> None:
        self.events: list[RoutingEvent] = []

    def emit(self, event: RoutingEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> list[RoutingEvent]:
        return [e for e in self.events if e.kind == kind]

    def kinds(self) -> list[EventKind]:
        return [e.kind for e in self.events]

    def clear(self) -> None:
        self.events.clear()


@dataclass
class JsonlSinkConfig:
    """Configuration for the JSON Lines event sink."""

    # Log file path (supports ~ expansion)
    log_path: str = "~/.agentroute/events.jsonl"

    enabled: bool = True

    # Maximum log file size in MB before rotation
    max_size_mb: float = 100.0

    # Number of rotated files to keep
    max_files: int = 5

    # Skip DEBUG-level kinds (retries, candidate delays, cost records)
    decisions_only: bool = False


class JsonlEventSink:
    """
    Appends events to a JSON Lines file with size-based rotation.

    Rotated files are named `<name>.jsonl.1` (newest) through
    `<name>.jsonl.<max_files - 1>`.
    """

    def __init__(self, config: JsonlSinkConfig | None = None):
        self.config = config or JsonlSinkConfig()
        self._log_path: Path | None = None
        self._event_count = 0

        if self.config.enabled:
            self._ensure_log_path()

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def _ensure_log_path(self) -> None:
        """Ensure log directory exists."""
        path = Path(self.config.log_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        self._log_path = path

    def _check_rotation(self) -> None:
        if self._log_path is None or not self._log_path.exists():
            return

        size_mb = self._log_path.stat().st_size / (1024 * 1024)
        if size_mb >= self.config.max_size_mb:
            self._rotate_logs()

    def _rotate_logs(self) -> None:
        if self._log_path is None:
            return

        # Shift existing rotated files
        for i in range(self.config.max_files - 1, 0, -1):
            old_path = self._log_path.with_suffix(f".jsonl.{i}")
            new_path = self._log_path.with_suffix(f".jsonl.{i + 1}")
            if old_path.exists():
                if i + 1 >= self.config.max_files:
                    old_path.unlink()  # Delete oldest
                else:
                    old_path.rename(new_path)

        if self._log_path.exists():
            self._log_path.rename(self._log_path.with_suffix(".jsonl.1"))

        logger.info(f"Rotated event log: {self._log_path}")

    def emit(self, event: RoutingEvent) -> None:
        if not self.config.enabled or self._log_path is None:
            return
        if self.config.decisions_only and event.kind not in _INFO_KINDS:
            return

        try:
            self._check_rotation()
            with open(self._log_path, "a") as f:
                f.write(event.model_dump_json() + "\n")
            self._event_count += 1
        except OSError as e:
            # Event logging must never fail a request
            logger.warning(f"Failed to write routing event: {e}")

    def get_statistics(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "enabled": self.config.enabled,
            "log_path": str(self._log_path) if self._log_path else None,
            "events_logged": self._event_count,
        }

        if self._log_path and self._log_path.exists():
            stats["log_size_mb"] = self._log_path.stat().st_size / (1024 * 1024)
            with open(self._log_path) as f:
                stats["log_lines"] = sum(1 for _ in f)

        return stats


def read_events(path: str | Path) -> list[RoutingEvent]:
    """Load events from a JSON Lines file, skipping malformed lines."""
    log_path = Path(path).expanduser()
    events: list[RoutingEvent] = []
    if not log_path.exists():
        return events

    with open(log_path) as f:
        for line in f:
            if not line.strip():
                continue
            try:
                events.append(RoutingEvent.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Skipping malformed event line: {e}")

    return events


__all__ = [
    "CollectingEventSink",
    "EventKind",
    "EventSink",
    "JsonlEventSink",
    "JsonlSinkConfig",
    "LoggingEventSink",
    "RoutingEvent",
    "read_events",
]
