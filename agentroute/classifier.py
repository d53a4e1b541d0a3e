"""
Task difficulty classification for tier selection.

Heuristics, in order:
1. Explicit `difficulty_hint` on the envelope wins
2. Simple-edit keywords with at most one file and a short prompt -> Easy
3. Architecture keywords, many files or a very long prompt -> Hard
4. Several files or a long prompt -> Medium
5. Otherwise Easy
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from .config import ClassifierThresholds
from .types import RequestEnvelope, TaskDifficulty

logger = logging.getLogger(__name__)


class TaskClassifier(Protocol):
    """Pluggable difficulty classifier."""

    def classify(self, envelope: RequestEnvelope) -> TaskDifficulty:
        ...


@dataclass
class DifficultySignals:
    """Signals extracted from a prompt."""

    length: int
    file_mentions: int
    architecture_keywords: list[str] = field(default_factory=list)
    simple_keywords: list[str] = field(default_factory=list)


class HeuristicTaskClassifier:
    """
    Classify difficulty from prompt length, file mentions and keywords.

    Thresholds are policy, not correctness; tune them through
    ClassifierThresholds.
    """

    FILE_PATTERN = r"\.(?:py|rs|js|ts|tsx|jsx|go|java|rb|c|cpp|h)\b"

    ARCHITECTURE_PATTERNS: list[str] = [
        r"\barchitecture\b",
        r"\brefactor",
        r"\bredesign\b",
        r"\bperformance\b",
        r"\bmigrat(e|ion)\b",
    ]

    SIMPLE_PATTERNS: list[str] = [
        r"\bfix (a |the )?typo\b",
        r"\brename\b",
        r"\bupdate (a |the )?comment\b",
        r"\bfix (a |the )?docstring\b",
    ]

    def __init__(self, thresholds: ClassifierThresholds | None = None):
        self.thresholds = thresholds or ClassifierThresholds()
        self._file_re = re.compile(self.FILE_PATTERN, re.IGNORECASE)
        self._architecture = [re.compile(p, re.IGNORECASE) for p in self.ARCHITECTURE_PATTERNS]
        self._simple = [re.compile(p, re.IGNORECASE) for p in self.SIMPLE_PATTERNS]

    def extract_signals(self, text: str) -> DifficultySignals:
        return DifficultySignals(
            length=len(text),
            file_mentions=len(self._file_re.findall(text)),
            architecture_keywords=[p.pattern for p in self._architecture if p.search(text)],
            simple_keywords=[p.pattern for p in self._simple if p.search(text)],
        )

    def classify(self, envelope: RequestEnvelope) -> TaskDifficulty:
        hint = envelope.constraints.difficulty_hint
        if hint is not None:
            return hint

        signals = self.extract_signals(envelope.prompt_text)
        difficulty = self.classify_signals(signals)
        logger.debug(
            f"Classified {envelope.task_id or 'request'} as {difficulty.value}: "
            f"length={signals.length}, files={signals.file_mentions}, "
            f"arch={len(signals.architecture_keywords)}, simple={len(signals.simple_keywords)}"
        )
        return difficulty

    def classify_signals(self, signals: DifficultySignals) -> TaskDifficulty:
        t = self.thresholds
        if (
            signals.simple_keywords
            and signals.file_mentions <= t.easy_max_files
            and signals.length < t.easy_max_length
        ):
            return TaskDifficulty.EASY
        if (
            signals.architecture_keywords
            or signals.file_mentions >= t.hard_min_files
            or signals.length > t.hard_min_length
        ):
            return TaskDifficulty.HARD
        if signals.file_mentions >= t.medium_min_files or signals.length > t.medium_min_length:
            return TaskDifficulty.MEDIUM
        return TaskDifficulty.EASY


class FixedTaskClassifier:
    """Always returns the same difficulty."""

    def __init__(self, difficulty: TaskDifficulty):
        self.difficulty = difficulty

    def classify(self, envelope: RequestEnvelope) -> TaskDifficulty:
        return self.difficulty


__all__ = [
    "DifficultySignals",
    "FixedTaskClassifier",
    "HeuristicTaskClassifier",
    "TaskClassifier",
]
