"""
Tests for crisiswatch.signals -- the four bounded signal layers.

Covers: word-boundary matching, tier precedence, intensifier bonuses and
the keyword cap, sentiment polarity and cap, conversation context
(cadence, persistence, isolation), and trajectory trends.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from crisiswatch.config import DEFAULT_LEXICON, ScoringPolicy
from crisiswatch.models import Message, MessageRole
from crisiswatch.signals import (
    ContextAnalyzer,
    KeywordMatcher,
    SentimentScorer,
    TrajectoryTracker,
    compile_phrase,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_message(text: str, seconds: float = 0, role: MessageRole = MessageRole.USER) -> Message:
    return Message(
        session_id="s1",
        role=role,
        text=text,
        timestamp=_T0 + timedelta(seconds=seconds),
    )


def _make_history(texts: list[str], gap_seconds: float = 60) -> list[Message]:
    return [_make_message(t, seconds=i * gap_seconds) for i, t in enumerate(texts)]


# ---------------------------------------------------------------------------
# Keyword layer
# ---------------------------------------------------------------------------

class TestKeywordMatcher:
    def test_phrase_requires_word_boundaries(self):
        """'suicide' matches a standalone word but not a URL fragment."""
        matcher = KeywordMatcher()
        assert matcher.has_match("I think about suicide a lot")
        assert not matcher.has_match("I read suicidewatch.org yesterday")

    def test_matching_is_case_insensitive(self):
        assert compile_phrase("kill myself").search("I want to KILL MYSELF")

    def test_high_tier_scores_its_weight(self):
        result = KeywordMatcher().score("I want to kill myself")
        assert result.score == 75
        assert "kill myself" in result.factors

    def test_highest_tier_wins(self):
        """A message matching several tiers scores the highest tier only."""
        result = KeywordMatcher().score("I feel hopeless and stressed")
        assert result.score == 45
        assert set(result.factors) == {"hopeless", "stressed"}

    def test_intensifiers_add_bonus_up_to_cap(self):
        # medium 45 + 2 intensifiers * 5 = 55
        assert KeywordMatcher().score("I feel hopeless right now, nothing helps").score == 55
        # medium 45 + 4 intensifiers * 5 = 65 -> capped at 60
        text = "hopeless right now, nothing helps, numb, goodbye"
        assert KeywordMatcher().score(text).score == 60

    def test_cap_never_lowers_a_matched_tier(self):
        """A high-tier match keeps its full weight even above the cap."""
        assert KeywordMatcher().score("I want to kill myself tonight").score == 75

    def test_no_match_scores_zero(self):
        result = KeywordMatcher().score("What a nice day for a walk")
        assert result.score == 0
        assert result.factors == []

    def test_empty_text_scores_zero(self):
        assert KeywordMatcher().score("").score == 0

    def test_intensifiers_without_tier_score_bonus_only(self):
        """Without a tier match, intensifiers contribute only their bonus."""
        result = KeywordMatcher().score("I'll do it today")
        assert result.score == 5
        assert result.factors == []


# ---------------------------------------------------------------------------
# Sentiment layer
# ---------------------------------------------------------------------------

class TestSentimentScorer:
    def test_negative_sentiment_adds_risk(self):
        scorer = SentimentScorer()
        # terrible (-10) + sad (-5) = -15 -> int(15 * 0.3) = 4
        assert scorer.sentiment("terrible and sad") == -15
        assert scorer.score("terrible and sad").score == 4

    def test_positive_sentiment_adds_nothing(self):
        result = SentimentScorer().score("I feel great and hopeful")
        assert result.score == 0
        assert result.detail["sentiment"] > 0

    def test_sentiment_contribution_is_capped(self):
        policy = ScoringPolicy(sentiment_multiplier=5.0)
        scorer = SentimentScorer(DEFAULT_LEXICON, policy)
        assert scorer.score("terrible awful horrible").score == 30

    def test_each_term_counts_once(self):
        assert SentimentScorer().sentiment("bad bad bad") == -5


# ---------------------------------------------------------------------------
# Context layer
# ---------------------------------------------------------------------------

class TestContextAnalyzer:
    def test_empty_history_scores_zero(self):
        assert ContextAnalyzer().score([]).score == 0

    def test_rapid_messaging_detected(self):
        history = _make_history(["hi", "hello", "are you there"], gap_seconds=10)
        result = ContextAnalyzer().score(history)
        assert "rapid_messaging" in result.factors
        assert result.score == 10

    def test_rapid_messaging_needs_three_user_messages(self):
        history = _make_history(["hi", "hello"], gap_seconds=5)
        assert "rapid_messaging" not in ContextAnalyzer().score(history).factors

    def test_slow_messaging_not_rapid(self):
        history = _make_history(["a", "b", "c", "d"], gap_seconds=120)
        assert ContextAnalyzer().score(history).score == 0

    def test_assistant_messages_ignored_for_cadence(self):
        history = [
            _make_message("hi", 0),
            _make_message("reply", 5, role=MessageRole.ASSISTANT),
            _make_message("hello", 10),
            _make_message("reply", 12, role=MessageRole.ASSISTANT),
        ]
        assert "rapid_messaging" not in ContextAnalyzer().score(history).factors

    def test_persistent_crisis_themes(self):
        history = _make_history(["I'm stressed", "so anxious", "feeling hopeless"])
        result = ContextAnalyzer().score(history)
        assert "persistent_crisis_themes" in result.factors
        assert result.score == 15

    def test_isolation_mentioned(self):
        history = _make_history(["I'm all alone"])
        result = ContextAnalyzer().score(history)
        assert result.factors == ["isolation_mentioned"]
        assert result.score == 8

    def test_context_is_capped(self):
        history = _make_history(
            ["stressed and alone", "anxious", "hopeless", "worried"], gap_seconds=5
        )
        # 10 + 15 + 8 = 33 -> capped at 30
        assert ContextAnalyzer().score(history).score == 30

    def test_naive_history_mixed_with_aware_message(self):
        """Stored history often comes back without tzinfo; it is read as UTC."""
        naive_t0 = _T0.replace(tzinfo=None)
        history = [
            Message(session_id="s1", text="I feel hopeless", timestamp=naive_t0),
            Message(session_id="s1", text="I feel worthless",
                    timestamp=naive_t0 + timedelta(seconds=10)),
            _make_message("I'm all alone", seconds=20),
        ]
        assert history[0].timestamp == _T0

        result = ContextAnalyzer().score(history)
        assert result.factors == ["rapid_messaging", "isolation_mentioned"]
        assert result.score == 18


# ---------------------------------------------------------------------------
# Trajectory layer
# ---------------------------------------------------------------------------

class TestTrajectoryTracker:
    def test_insufficient_data(self):
        result = TrajectoryTracker().score([40])
        assert result.score == 0
        assert result.detail["trend"] == TrajectoryTracker.INSUFFICIENT_DATA

    def test_deteriorating_trend(self):
        result = TrajectoryTracker().score([20, 25, 30])
        assert result.score == 15
        assert result.detail["trend"] == TrajectoryTracker.DETERIORATING

    def test_sudden_spike_on_two_points(self):
        result = TrajectoryTracker().score([10, 35])
        assert result.score == 10
        assert result.detail["trend"] == TrajectoryTracker.SUDDEN_SPIKE

    def test_deteriorating_with_spike_is_capped(self):
        # 15 + 10 = 25 -> capped at 20
        assert TrajectoryTracker().score([10, 12, 40]).score == 20

    def test_stable_trend(self):
        result = TrajectoryTracker().score([30, 20, 25])
        assert result.score == 0
        assert result.detail["trend"] == TrajectoryTracker.STABLE

    def test_only_last_window_points_considered(self):
        # The early drop falls outside the 5-point window.
        result = TrajectoryTracker().score([90, 10, 11, 12, 13, 14])
        assert result.detail["trend"] == TrajectoryTracker.DETERIORATING
