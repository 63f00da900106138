"""
Risk Aggregator -- Multi-Layer Risk Scoring.

Combines the four signal layers into a single 0-100 risk score, maps it to
a severity, and appends a ``risk_score_history`` row whenever the score is
above zero.  The history write happens regardless of whether the session
is later escalated, so the trajectory layer stays populated for the next
message.  The aggregator never touches session crisis state.

**Failure model (fail-open):**  any layer that raises -- most commonly a
failed history read -- contributes zero and the failure is logged.  A
failed history write is logged and does not abort scoring.  A storage
hiccup can therefore under-score a message; such degradations surface as
``SIGNAL_LAYER_DEGRADED`` and ``RISK_HISTORY_WRITE_FAILED`` log events.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import select

from crisiswatch.audit import validate_risk_score
from crisiswatch.config import DEFAULT_LEXICON, DEFAULT_POLICY, Lexicon, ScoringPolicy
from crisiswatch.errors import PersistenceError, ValidationError
from crisiswatch.models import Message, RiskHistoryRecord, Severity
from crisiswatch.signals import (
    ContextAnalyzer,
    KeywordMatcher,
    LayerResult,
    SentimentScorer,
    TextScorer,
    TrajectoryTracker,
)
from crisiswatch.storage import Database, RiskScoreHistoryRow

logger = logging.getLogger(__name__)


def severity_for_score(score: int, policy: ScoringPolicy = DEFAULT_POLICY) -> Severity:
    """Map a risk score to its severity.

    With the default policy: 0-30 -> LOW, 31-70 -> MEDIUM, 71-100 -> HIGH.

    Raises:
        ValidationError: If ``score`` is not an integer in [0, 100].
    """
    if score is None:
        raise ValidationError("Risk score is required.")
    validate_risk_score(score)
    if score >= policy.high_min_score:
        return Severity.HIGH
    if score >= policy.medium_min_score:
        return Severity.MEDIUM
    return Severity.LOW


class RiskBreakdown(BaseModel):
    keyword_score: int = 0
    sentiment_score: int = 0
    context_score: int = 0
    trajectory_score: int = 0
    matched_keywords: list[str] = Field(default_factory=list)
    trend: str = TrajectoryTracker.INSUFFICIENT_DATA
    sentiment: int = 0


class RiskAssessment(BaseModel):
    """Result of scoring one message."""

    session_id: str
    message_ref: Optional[str] = None
    risk_score: int = Field(..., ge=0, le=100)
    severity: Severity
    factors: list[str] = Field(default_factory=list)
    breakdown: RiskBreakdown = Field(default_factory=RiskBreakdown)


class RiskAnalyzer:
    """Score messages and maintain the risk score history."""

    def __init__(
        self,
        db: Database,
        lexicon: Lexicon = DEFAULT_LEXICON,
        policy: ScoringPolicy = DEFAULT_POLICY,
        keyword_scorer: Optional[TextScorer] = None,
        sentiment_scorer: Optional[TextScorer] = None,
    ) -> None:
        self._db = db
        self.policy = policy
        keyword_matcher = KeywordMatcher(lexicon, policy)
        self._keywords: TextScorer = keyword_scorer or keyword_matcher
        self._sentiment: TextScorer = sentiment_scorer or SentimentScorer(lexicon, policy)
        self._context = ContextAnalyzer(keyword_matcher, lexicon, policy)
        self._trajectory = TrajectoryTracker(policy)

    # -- scoring --

    def analyze_message_risk(
        self,
        message: Message,
        history: Sequence[Message] = (),
    ) -> RiskAssessment:
        """Score ``message`` given the session's recent ``history``.

        Side effect: appends a risk history row when the score is above zero.

        Args:
            message: The inbound message to score.
            history: Up to ``history_window`` recent messages, oldest first.

        Returns:
            A ``RiskAssessment`` with score, severity, factors and breakdown.
        """
        session_id = message.session_id
        keyword = self._run_layer("keyword", session_id, lambda: self._keywords.score(message.text))
        sentiment = self._run_layer("sentiment", session_id, lambda: self._sentiment.score(message.text))
        context = self._run_layer("context", session_id, lambda: self._context.score(history))
        trajectory = self._run_layer(
            "trajectory",
            session_id,
            lambda: self._trajectory.score(self.recent_scores(session_id)),
        )

        total = keyword.score + sentiment.score + context.score + trajectory.score
        risk_score = max(0, min(100, total))
        severity = severity_for_score(risk_score, self.policy)

        breakdown = RiskBreakdown(
            keyword_score=keyword.score,
            sentiment_score=sentiment.score,
            context_score=context.score,
            trajectory_score=trajectory.score,
            matched_keywords=list(keyword.factors),
            trend=trajectory.detail.get("trend", TrajectoryTracker.INSUFFICIENT_DATA),
            sentiment=sentiment.detail.get("sentiment", 0),
        )
        assessment = RiskAssessment(
            session_id=session_id,
            message_ref=message.message_id,
            risk_score=risk_score,
            severity=severity,
            factors=list(keyword.factors) + list(context.factors),
            breakdown=breakdown,
        )

        if risk_score > 0:
            self._record_history(assessment)

        logger.info(
            "MESSAGE_SCORED",
            extra={
                "session_id": session_id,
                "message_ref": message.message_id,
                "risk_score": risk_score,
                "severity": severity.value,
            },
        )
        return assessment

    def _run_layer(
        self,
        name: str,
        session_id: str,
        compute: Callable[[], LayerResult],
    ) -> LayerResult:
        try:
            return compute()
        except Exception as exc:
            logger.warning(
                "SIGNAL_LAYER_DEGRADED",
                extra={"layer": name, "session_id": session_id, "error": str(exc)},
                exc_info=True,
            )
            detail: dict[str, Any] = {"trend": "error"} if name == "trajectory" else {}
            return LayerResult(score=0, detail=detail)

    # -- history --

    def recent_scores(self, session_id: str) -> list[int]:
        """The session's last ``trajectory_window`` scores, oldest first."""
        stmt = (
            select(RiskScoreHistoryRow.risk_score)
            .where(RiskScoreHistoryRow.session_id == session_id)
            .order_by(
                RiskScoreHistoryRow.calculated_at.desc(),
                RiskScoreHistoryRow.history_id.desc(),
            )
            .limit(self.policy.trajectory_window)
        )
        with self._db.transaction() as s:
            scores = list(s.scalars(stmt))
        scores.reverse()
        return scores

    def _record_history(self, assessment: RiskAssessment) -> None:
        b = assessment.breakdown
        row = RiskScoreHistoryRow(
            session_id=assessment.session_id,
            message_ref=assessment.message_ref,
            risk_score=assessment.risk_score,
            severity=assessment.severity.value,
            score_factors={
                "keyword_score": b.keyword_score,
                "sentiment_score": b.sentiment_score,
                "context_score": b.context_score,
                "trajectory_score": b.trajectory_score,
                "matched_keywords": b.matched_keywords,
                "trend": b.trend,
            },
            calculated_at=datetime.now(timezone.utc),
        )
        try:
            with self._db.transaction() as s:
                s.add(row)
        except PersistenceError as exc:
            logger.error(
                "RISK_HISTORY_WRITE_FAILED",
                extra={"session_id": assessment.session_id, "error": str(exc)},
            )

    def session_risk_history(self, session_id: str) -> list[RiskHistoryRecord]:
        """All history rows for a session, oldest first."""
        stmt = (
            select(RiskScoreHistoryRow)
            .where(RiskScoreHistoryRow.session_id == session_id)
            .order_by(RiskScoreHistoryRow.calculated_at, RiskScoreHistoryRow.history_id)
        )
        with self._db.transaction() as s:
            return [RiskHistoryRecord.model_validate(r) for r in s.scalars(stmt)]
