"""
Tests for crisiswatch.intervention -- Graduated Response.

Covers: one intervention action per firing for each severity, the action
payloads, notification channels, automatic handoff and review for high
severity, notifier failures, operator outcomes, and input validation.
"""

from __future__ import annotations

import pytest

from crisiswatch.audit import CrisisEventLog
from crisiswatch.clinical_review import ClinicalReviewWorkflow
from crisiswatch.errors import NotFoundError, ValidationError
from crisiswatch.escalation import EscalationDispatcher
from crisiswatch.handoff import HandoffWorkflow
from crisiswatch.intervention import InterventionExecutor
from crisiswatch.models import (
    CrisisEventType,
    HandoffType,
    InterventionType,
    ReviewType,
    Severity,
)
from crisiswatch.notifications import ADMIN_CHANNEL, RecordingNotifier, session_channel
from crisiswatch.storage import Database


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_db(tmp_path) -> Database:
    db = Database(f"sqlite:///{tmp_path}/crisis.db")
    db.create_all()
    EscalationDispatcher(db).register_session("s1")
    return db


def _make_executor(db: Database, notifier=None):
    notifier = notifier if notifier is not None else RecordingNotifier()
    reviews = ClinicalReviewWorkflow(db, notifier)
    handoffs = HandoffWorkflow(db, reviews, notifier)
    return InterventionExecutor(db, handoffs, notifier), handoffs, reviews


class _FailingNotifier:
    def notify(self, channel, event, payload):
        raise ConnectionError("socket closed")


# ---------------------------------------------------------------------------
# 1. Severity responses
# ---------------------------------------------------------------------------

class TestGraduatedResponse:
    def test_low_offers_resources(self, tmp_path):
        db = _make_db(tmp_path)
        notifier = RecordingNotifier()
        executor, handoffs, _ = _make_executor(db, notifier)

        outcome = executor.execute("s1", Severity.LOW, 20)
        assert outcome.action.action_type == InterventionType.LOW_RISK_RESOURCES
        assert outcome.action.details["resourcesProvided"] == [
            "coping_strategies", "relaxation_techniques", "grounding_exercises",
        ]
        assert outcome.handoff is None
        assert notifier.events(session_channel("s1")) == ["resources_offered"]
        assert notifier.events(ADMIN_CHANNEL) == []
        assert handoffs.pending_handoffs() == []

    def test_medium_alerts_supervisors(self, tmp_path):
        db = _make_db(tmp_path)
        notifier = RecordingNotifier()
        executor, handoffs, _ = _make_executor(db, notifier)

        outcome = executor.execute("s1", Severity.MEDIUM, 50)
        assert outcome.action.action_type == InterventionType.MEDIUM_RISK_ALERT
        assert outcome.action.details["alertsSent"] == ["supervisor_review", "increased_monitoring"]
        assert outcome.action.details["therapeuticCheckIn"] is True
        assert notifier.events(ADMIN_CHANNEL) == ["supervisor_review_required"]
        assert handoffs.pending_handoffs() == []

    def test_high_triggers_emergency_and_handoff(self, tmp_path):
        db = _make_db(tmp_path)
        notifier = RecordingNotifier()
        executor, handoffs, reviews = _make_executor(db, notifier)

        outcome = executor.execute("s1", Severity.HIGH, 85)
        assert outcome.action.action_type == InterventionType.HIGH_RISK_EMERGENCY
        assert outcome.action.details == {
            "riskScore": 85,
            "emergencyProtocol": "activated",
            "hotlineDisplayed": True,
            "handoffInitiated": True,
        }
        assert notifier.events(session_channel("s1")) == ["crisis_emergency"]
        assert notifier.events(ADMIN_CHANNEL) == [
            "crisis_emergency", "handoff_required", "clinical_review_required",
        ]

        pending = handoffs.pending_handoffs()
        assert len(pending) == 1
        assert pending[0].handoff_type == HandoffType.CRISIS_HOTLINE
        assert outcome.handoff.handoff.handoff_id == pending[0].handoff_id

        review_queue = reviews.pending_clinical_reviews()
        assert len(review_queue) == 1
        assert review_queue[0].review_type == ReviewType.POST_CRISIS

    @pytest.mark.parametrize(
        "severity,score", [(Severity.LOW, 10), (Severity.MEDIUM, 40), (Severity.HIGH, 90)]
    )
    def test_exactly_one_action_per_firing(self, tmp_path, severity, score):
        db = _make_db(tmp_path)
        executor, _, _ = _make_executor(db)
        executor.execute("s1", severity, score)
        assert len(executor.session_interventions("s1")) == 1
        triggered = CrisisEventLog(db).query(
            "s1", event_type=CrisisEventType.INTERVENTION_TRIGGERED
        )
        assert len(triggered) == 1

    def test_notifier_failure_does_not_undo_action(self, tmp_path):
        db = _make_db(tmp_path)
        executor, handoffs, _ = _make_executor(db, _FailingNotifier())
        outcome = executor.execute("s1", Severity.HIGH, 90)
        assert outcome.action.action_id is not None
        assert len(handoffs.pending_handoffs()) == 1

    def test_none_severity_has_no_response(self, tmp_path):
        db = _make_db(tmp_path)
        executor, _, _ = _make_executor(db)
        with pytest.raises(ValidationError):
            executor.execute("s1", Severity.NONE, 0)

    def test_unknown_session(self, tmp_path):
        db = _make_db(tmp_path)
        executor, _, _ = _make_executor(db)
        with pytest.raises(NotFoundError):
            executor.execute("ghost", Severity.LOW, 10)


# ---------------------------------------------------------------------------
# 2. Action log
# ---------------------------------------------------------------------------

class TestInterventionLog:
    def test_log_defaults_score_from_details(self, tmp_path):
        db = _make_db(tmp_path)
        executor, _, _ = _make_executor(db)
        action = executor.log_intervention_action(
            "s1", InterventionType.MONITORING_INCREASED,
            {"riskScore": 45, "newFrequency": "high"},
        )
        assert action.risk_score == 45
        assert action.performed_by == "system"

    def test_unknown_action_type_rejected(self, tmp_path):
        db = _make_db(tmp_path)
        executor, _, _ = _make_executor(db)
        with pytest.raises(ValidationError):
            executor.log_intervention_action("s1", "send_flowers", {})

    def test_set_outcome(self, tmp_path):
        db = _make_db(tmp_path)
        executor, _, _ = _make_executor(db)
        action_id = executor.execute("s1", Severity.MEDIUM, 50).action.action_id

        updated = executor.set_intervention_outcome(
            action_id, "user_engaged", notes="Responded to check-in"
        )
        assert updated.outcome == "user_engaged"
        assert updated.notes == "Responded to check-in"
        assert updated.details["alertsSent"] == ["supervisor_review", "increased_monitoring"]

    def test_set_outcome_requires_value(self, tmp_path):
        db = _make_db(tmp_path)
        executor, _, _ = _make_executor(db)
        action_id = executor.execute("s1", Severity.LOW, 10).action.action_id
        with pytest.raises(ValidationError):
            executor.set_intervention_outcome(action_id, "")

    def test_set_outcome_unknown_action(self, tmp_path):
        db = _make_db(tmp_path)
        executor, _, _ = _make_executor(db)
        with pytest.raises(NotFoundError):
            executor.set_intervention_outcome(12345, "resolved")
