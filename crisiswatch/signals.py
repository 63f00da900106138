"""
Signal Layers -- Bounded Sub-Scores for Risk Aggregation.

Four independent layers each produce a capped, non-negative contribution
plus a short list of human-readable factors explaining it:

* ``KeywordMatcher``     -- tiered crisis phrases + emotional intensifiers.
* ``SentimentScorer``    -- lexicon-weighted sentiment, negative side only.
* ``ContextAnalyzer``    -- cadence, topic persistence, isolation language
  across the recent conversation window.
* ``TrajectoryTracker``  -- trend of the session's recent risk scores.

The two lexical layers implement the ``TextScorer`` protocol
(``score(text) -> LayerResult``) so either can be replaced, e.g. by a
learned classifier, without touching the aggregator.

Phrase matching is case-insensitive and bounded by word boundaries on both
sides: "suicide" matches "I think about suicide" but not
"suicidewatch.org".
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional, Protocol, Sequence

from crisiswatch.config import DEFAULT_LEXICON, DEFAULT_POLICY, Lexicon, ScoringPolicy
from crisiswatch.models import Message, MessageRole


class LayerResult:
    """Contribution of one signal layer to the aggregate risk score."""

    def __init__(
        self,
        score: int,
        factors: Optional[list[str]] = None,
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        self.score = score
        self.factors = factors or []
        self.detail = detail or {}

    def __repr__(self) -> str:
        return f"LayerResult(score={self.score}, factors={self.factors})"


class TextScorer(Protocol):
    def score(self, text: str) -> LayerResult: ...


def compile_phrase(phrase: str) -> re.Pattern:
    """Compile a whole-word, case-insensitive pattern for ``phrase``."""
    return re.compile(r"\b" + re.escape(phrase) + r"\b", re.IGNORECASE)


def _compile_all(phrases: Iterable[str]) -> list[tuple[str, re.Pattern]]:
    return [(p, compile_phrase(p)) for p in phrases]


# ---------------------------------------------------------------------------
# Layer 1: keywords
# ---------------------------------------------------------------------------

class KeywordMatcher:
    """Match message text against tiered crisis phrases.

    The layer score is the highest matched tier's weight plus a flat bonus
    for each distinct intensifier phrase, bounded by ``keyword_cap``.  The
    cap limits intensifier inflation only: a matched tier is never scored
    below its own weight.
    """

    def __init__(
        self,
        lexicon: Lexicon = DEFAULT_LEXICON,
        policy: ScoringPolicy = DEFAULT_POLICY,
    ) -> None:
        self._policy = policy
        tier_scores = {
            "high": policy.high_tier_score,
            "medium": policy.medium_tier_score,
            "low": policy.low_tier_score,
        }
        self._tiers = [
            (tier, tier_scores[tier], _compile_all(lexicon.keyword_tiers.get(tier, [])))
            for tier in ("high", "medium", "low")
        ]
        self._intensifiers = [
            (category, _compile_all(phrases))
            for category, phrases in lexicon.intensifiers.items()
        ]

    def matches(self, text: str) -> list[dict[str, Any]]:
        """Return every crisis phrase found in ``text`` with its tier."""
        if not text:
            return []
        found = []
        for tier, weight, patterns in self._tiers:
            for phrase, pattern in patterns:
                if pattern.search(text):
                    found.append({"keyword": phrase, "tier": tier, "score": weight})
        return found

    def has_match(self, text: str) -> bool:
        return bool(self.matches(text))

    def intensifiers(self, text: str) -> list[dict[str, str]]:
        if not text:
            return []
        found = []
        for category, patterns in self._intensifiers:
            for phrase, pattern in patterns:
                if pattern.search(text):
                    found.append({"phrase": phrase, "category": category})
        return found

    def score(self, text: str) -> LayerResult:
        matched = self.matches(text)
        intensifiers = self.intensifiers(text)

        tier_score = max((m["score"] for m in matched), default=0)
        bonus = self._policy.intensifier_bonus * len(intensifiers)
        layer_score = max(tier_score, min(tier_score + bonus, self._policy.keyword_cap))

        return LayerResult(
            score=layer_score,
            factors=[m["keyword"] for m in matched],
            detail={"matches": matched, "intensifiers": intensifiers},
        )


# ---------------------------------------------------------------------------
# Layer 2: sentiment
# ---------------------------------------------------------------------------

class SentimentScorer:
    """Lexicon-weighted sentiment.  Only negative sentiment adds risk."""

    def __init__(
        self,
        lexicon: Lexicon = DEFAULT_LEXICON,
        policy: ScoringPolicy = DEFAULT_POLICY,
    ) -> None:
        self._policy = policy
        self._categories = [
            (cat.weight, _compile_all(cat.terms)) for cat in lexicon.sentiment
        ]

    def sentiment(self, text: str) -> int:
        """Signed sentiment in [-100, 100]; each matched term counts once."""
        if not text:
            return 0
        value = 0
        for weight, patterns in self._categories:
            for _term, pattern in patterns:
                if pattern.search(text):
                    value += weight
        return max(-100, min(100, value))

    def score(self, text: str) -> LayerResult:
        sentiment = self.sentiment(text)
        contribution = max(0, int(-sentiment * self._policy.sentiment_multiplier))
        return LayerResult(
            score=min(contribution, self._policy.sentiment_cap),
            detail={"sentiment": sentiment},
        )


# ---------------------------------------------------------------------------
# Layer 3: conversation context
# ---------------------------------------------------------------------------

class ContextAnalyzer:
    """Score patterns across the recent conversation window."""

    def __init__(
        self,
        keyword_matcher: Optional[KeywordMatcher] = None,
        lexicon: Lexicon = DEFAULT_LEXICON,
        policy: ScoringPolicy = DEFAULT_POLICY,
    ) -> None:
        self._policy = policy
        self._keywords = keyword_matcher or KeywordMatcher(lexicon, policy)
        self._isolation = _compile_all(lexicon.isolation_phrases)

    def score(self, history: Sequence[Message]) -> LayerResult:
        policy = self._policy
        window = list(history)[-policy.history_window:]
        if not window:
            return LayerResult(score=0)

        total = 0
        factors: list[str] = []

        if self._is_rapid(window):
            total += policy.rapid_cadence_bonus
            factors.append("rapid_messaging")

        crisis_messages = sum(1 for m in window if self._keywords.has_match(m.text))
        if crisis_messages >= policy.persistence_min_messages:
            total += policy.persistence_bonus
            factors.append("persistent_crisis_themes")

        if any(p.search(m.text or "") for m in window for _phrase, p in self._isolation):
            total += policy.isolation_bonus
            factors.append("isolation_mentioned")

        return LayerResult(
            score=min(total, policy.context_cap),
            factors=factors,
            detail={"window_size": len(window), "crisis_messages": crisis_messages},
        )

    def _is_rapid(self, window: list[Message]) -> bool:
        policy = self._policy
        user_messages = [m for m in window if m.role == MessageRole.USER]
        recent = sorted(user_messages, key=lambda m: m.timestamp)[-policy.cadence_window:]
        if len(recent) < policy.cadence_min_messages:
            return False
        span = (recent[-1].timestamp - recent[0].timestamp).total_seconds()
        average = span / (len(recent) - 1)
        return average < policy.rapid_cadence_seconds


# ---------------------------------------------------------------------------
# Layer 4: trajectory
# ---------------------------------------------------------------------------

class TrajectoryTracker:
    """Score the trend of a session's recent risk scores.

    ``scores`` must be chronological (oldest first).  Only the last
    ``trajectory_window`` points are considered.
    """

    INSUFFICIENT_DATA = "insufficient_data"
    STABLE = "stable"
    DETERIORATING = "deteriorating"
    SUDDEN_SPIKE = "sudden_spike"

    def __init__(self, policy: ScoringPolicy = DEFAULT_POLICY) -> None:
        self._policy = policy

    def score(self, scores: Sequence[int]) -> LayerResult:
        policy = self._policy
        points = list(scores)[-policy.trajectory_window:]
        if len(points) < 2:
            return LayerResult(score=0, detail={"trend": self.INSUFFICIENT_DATA})

        total = 0
        trend = self.STABLE
        factors: list[str] = []

        non_decreasing = all(b >= a for a, b in zip(points, points[1:]))
        if non_decreasing and len(points) >= policy.deteriorating_min_points:
            total += policy.deteriorating_bonus
            trend = self.DETERIORATING
            factors.append(self.DETERIORATING)

        if points[-1] - points[-2] > policy.spike_delta:
            total += policy.spike_bonus
            trend = self.SUDDEN_SPIKE
            factors.append(self.SUDDEN_SPIKE)

        return LayerResult(
            score=min(total, policy.trajectory_cap),
            factors=factors,
            detail={"trend": trend, "points": points},
        )
