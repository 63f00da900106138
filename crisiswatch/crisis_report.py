"""
Session Crisis Report Generator.

Generates a structured report of one session's crisis history for
clinician and supervisor review: current crisis state, the audit event
timeline, the risk score trajectory, and every intervention, handoff and
clinical review recorded for the session.

DISCLAIMER: Crisis reports are decision-support summaries for human
review.  They do not constitute clinical assessments, diagnoses, or
treatment recommendations.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from crisiswatch.models import (
    ClinicalReviewRecord,
    CrisisEventRecord,
    HandoffRecord,
    InterventionRecord,
    RiskHistoryRecord,
    SessionCrisisState,
)

if TYPE_CHECKING:
    from crisiswatch.monitor import CrisisMonitor


class CrisisReport:
    """A structured crisis report for one session."""

    def __init__(
        self,
        session_id: str,
        state: SessionCrisisState,
        timeline: list[dict[str, Any]],
        risk_trajectory: list[dict[str, Any]],
        interventions: list[InterventionRecord],
        handoffs: list[HandoffRecord],
        clinical_reviews: list[ClinicalReviewRecord],
        generated_at: str,
    ) -> None:
        self.session_id = session_id
        self.state = state
        self.timeline = timeline
        self.risk_trajectory = risk_trajectory
        self.interventions = interventions
        self.handoffs = handoffs
        self.clinical_reviews = clinical_reviews
        self.generated_at = generated_at

    @property
    def peak_risk_score(self) -> int:
        return max((p["risk_score"] for p in self.risk_trajectory), default=0)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a JSON-compatible dictionary."""
        return {
            "report_type": "Session Crisis Report",
            "disclaimer": (
                "This report is a decision-support summary for human review. "
                "It does not constitute a clinical assessment or diagnosis."
            ),
            "session_id": self.session_id,
            "current_state": self.state.model_dump(mode="json"),
            "peak_risk_score": self.peak_risk_score,
            "timeline": self.timeline,
            "risk_trajectory": self.risk_trajectory,
            "interventions": [i.model_dump(mode="json") for i in self.interventions],
            "handoffs": [h.model_dump(mode="json") for h in self.handoffs],
            "clinical_reviews": [r.model_dump(mode="json") for r in self.clinical_reviews],
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"CrisisReport(session_id={self.session_id}, "
            f"severity={self.state.severity.value}, flagged={self.state.flagged})"
        )


def generate_crisis_report(monitor: "CrisisMonitor", session_id: str) -> CrisisReport:
    """Generate a crisis report for ``session_id``.

    Raises:
        NotFoundError: If the session is not registered.
    """
    state = monitor.dispatcher.get_session_state(session_id)
    events = list(reversed(monitor.events.trail(session_id)))

    return CrisisReport(
        session_id=session_id,
        state=state,
        timeline=[_describe_event(e) for e in events],
        risk_trajectory=_build_trajectory(monitor.analyzer.session_risk_history(session_id)),
        interventions=monitor.interventions.session_interventions(session_id),
        handoffs=monitor.handoffs.session_handoffs(session_id),
        clinical_reviews=monitor.reviews.session_clinical_reviews(session_id),
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _build_trajectory(history: list[RiskHistoryRecord]) -> list[dict[str, Any]]:
    return [
        {
            "risk_score": h.risk_score,
            "severity": h.severity.value,
            "trend": h.score_factors.get("trend"),
            "calculated_at": h.calculated_at.isoformat(),
        }
        for h in history
    ]


def _describe_event(event: CrisisEventRecord) -> dict[str, Any]:
    """Build one chronological timeline entry from a crisis event."""
    details = event.intervention_details or {}
    kind = event.event_type.value

    if kind == "flagged":
        description = f"Session flagged at {event.severity.value} severity (score {event.risk_score})."
    elif kind == "unflagged":
        description = f"Session unflagged by {event.triggered_by}."
    elif kind == "severity_changed":
        description = (
            f"Severity changed from {event.previous_severity.value} to "
            f"{event.severity.value} (score {event.previous_risk_score} -> {event.risk_score})."
        )
    elif kind == "risk_score_updated":
        description = f"Risk score updated from {event.previous_risk_score} to {event.risk_score}."
    elif kind == "intervention_triggered":
        description = f"Intervention {details.get('action_type')} performed."
    elif kind == "handoff_initiated":
        description = f"Handoff {details.get('handoff_type')} initiated."
    elif kind == "handoff_status_changed":
        description = f"Handoff {details.get('handoff_id')} moved to {details.get('status')}."
    elif kind == "clinical_review_requested":
        description = f"Clinical review {details.get('review_type')} requested."
    else:
        description = f"Clinical review {details.get('review_id')} moved to {details.get('status')}."

    return {
        "event_type": kind,
        "timestamp": event.created_at.isoformat(),
        "triggered_by": event.triggered_by,
        "trigger_method": event.trigger_method.value,
        "description": description,
    }
