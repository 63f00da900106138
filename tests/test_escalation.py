"""
Tests for crisiswatch.escalation -- Per-Session Crisis State Machine.

Covers: the hysteresis rule (flag, suppress jitter, re-escalate), event
typing on re-escalation, idempotent transitions, manual flag/unflag and
score correction, severity/score consistency checks, active session
ordering, per-session serialization under concurrent dispatch, and
atomic rollback when the audit write fails.
"""

from __future__ import annotations

import threading

import pytest

from crisiswatch.audit import CrisisEventLog
from crisiswatch.errors import InvalidTransitionError, NotFoundError, ValidationError
from crisiswatch.escalation import EscalationDispatcher
from crisiswatch.models import (
    CrisisEventType,
    MonitoringFrequency,
    Severity,
    TriggerMethod,
)
from crisiswatch.risk import RiskAssessment, severity_for_score
from crisiswatch.storage import Database


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def _make_db(tmp_path) -> Database:
    db = Database(f"sqlite:///{tmp_path}/crisis.db")
    db.create_all()
    return db


def _make_dispatcher(tmp_path, session_id: str = "s1") -> EscalationDispatcher:
    dispatcher = EscalationDispatcher(_make_db(tmp_path))
    dispatcher.register_session(session_id)
    return dispatcher


def _make_assessment(score: int, session_id: str = "s1") -> RiskAssessment:
    return RiskAssessment(
        session_id=session_id,
        message_ref=f"m-{score}",
        risk_score=score,
        severity=severity_for_score(score),
        factors=["test"],
    )


def _events(dispatcher: EscalationDispatcher, session_id: str = "s1"):
    return CrisisEventLog(dispatcher._db).trail(session_id)


# ---------------------------------------------------------------------------
# 1. Session registry
# ---------------------------------------------------------------------------

class TestRegisterSession:
    def test_new_session_is_unflagged(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        state = dispatcher.get_session_state("s1")
        assert state.flagged is False
        assert state.severity == Severity.NONE
        assert state.risk_score == 0
        assert state.monitoring_frequency == MonitoringFrequency.NORMAL

    def test_register_is_idempotent(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.flag_session("s1", Severity.MEDIUM, 50, "dr_smith")
        state = dispatcher.register_session("s1")
        assert state.flagged is True
        assert state.risk_score == 50

    def test_register_requires_session_id(self, tmp_path):
        dispatcher = EscalationDispatcher(_make_db(tmp_path))
        with pytest.raises(ValidationError):
            dispatcher.register_session("")

    def test_unknown_session(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        with pytest.raises(NotFoundError):
            dispatcher.get_session_state("nope")
        with pytest.raises(NotFoundError):
            dispatcher.dispatch(_make_assessment(50, "nope"))


# ---------------------------------------------------------------------------
# 2. Hysteresis
# ---------------------------------------------------------------------------

class TestHysteresis:
    def test_score_at_threshold_does_not_flag(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        assert dispatcher.dispatch(_make_assessment(30)) is None
        assert dispatcher.get_session_state("s1").flagged is False
        assert _events(dispatcher) == []

    def test_jitter_after_flag_is_suppressed(self, tmp_path):
        """20 -> 35 -> 38: one flagged event at 35, nothing for 38."""
        dispatcher = _make_dispatcher(tmp_path)
        assert dispatcher.dispatch(_make_assessment(20)) is None

        event = dispatcher.dispatch(_make_assessment(35))
        assert event.event_type == CrisisEventType.FLAGGED
        assert event.severity == Severity.MEDIUM
        assert event.previous_severity == Severity.NONE
        assert event.trigger_method == TriggerMethod.AUTO

        assert dispatcher.dispatch(_make_assessment(38)) is None
        state = dispatcher.get_session_state("s1")
        assert state.risk_score == 35
        assert len(_events(dispatcher)) == 1

    def test_increase_beyond_margin_re_escalates(self, tmp_path):
        """35 -> 50 exceeds 35 + 10 and writes a score update."""
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.dispatch(_make_assessment(35))
        event = dispatcher.dispatch(_make_assessment(50))
        assert event.event_type == CrisisEventType.RISK_SCORE_UPDATED
        assert event.previous_risk_score == 35
        assert event.risk_score == 50
        assert dispatcher.get_session_state("s1").risk_score == 50

    def test_increase_equal_to_margin_is_suppressed(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.dispatch(_make_assessment(35))
        assert dispatcher.dispatch(_make_assessment(45)) is None

    def test_severity_change_event_on_re_escalation(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.dispatch(_make_assessment(40))
        event = dispatcher.dispatch(_make_assessment(80))
        assert event.event_type == CrisisEventType.SEVERITY_CHANGED
        assert event.previous_severity == Severity.MEDIUM
        assert event.severity == Severity.HIGH
        state = dispatcher.get_session_state("s1")
        assert state.monitoring_frequency == MonitoringFrequency.CRITICAL

    def test_lower_score_never_de_escalates(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.dispatch(_make_assessment(80))
        assert dispatcher.dispatch(_make_assessment(40)) is None
        assert dispatcher.get_session_state("s1").severity == Severity.HIGH

    def test_flag_records_factors_and_message_ref(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        event = dispatcher.dispatch(_make_assessment(60))
        assert event.message_ref == "m-60"
        assert event.risk_factors["factors"] == ["test"]
        assert event.triggered_by == "system"


# ---------------------------------------------------------------------------
# 3. Operator transitions
# ---------------------------------------------------------------------------

class TestManualTransitions:
    def test_manual_flag(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        event = dispatcher.flag_session("s1", Severity.HIGH, 85, "dr_smith", notes="chat review")
        assert event.event_type == CrisisEventType.FLAGGED
        assert event.trigger_method == TriggerMethod.MANUAL
        state = dispatcher.get_session_state("s1")
        assert state.flagged is True
        assert state.flagged_by == "dr_smith"
        assert state.flagged_at is not None
        assert state.monitoring_frequency == MonitoringFrequency.CRITICAL

    def test_repeat_flag_is_idempotent(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.flag_session("s1", Severity.MEDIUM, 50, "dr_smith")
        assert dispatcher.flag_session("s1", Severity.MEDIUM, 50, "dr_smith") is None
        assert len(_events(dispatcher)) == 1

    def test_severity_must_match_score(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        with pytest.raises(ValidationError):
            dispatcher.flag_session("s1", Severity.HIGH, 40, "dr_smith")
        with pytest.raises(ValidationError):
            dispatcher.flag_session("s1", Severity.LOW, 101, "dr_smith")
        assert _events(dispatcher) == []

    def test_unknown_severity_rejected(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        with pytest.raises(ValidationError):
            dispatcher.flag_session("s1", "catastrophic", 90, "dr_smith")

    def test_unflag_returns_to_normal_monitoring(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.dispatch(_make_assessment(80))
        event = dispatcher.unflag_session("s1", "dr_smith", notes="safe, followed up")
        assert event.event_type == CrisisEventType.UNFLAGGED
        assert event.trigger_method == TriggerMethod.MANUAL
        state = dispatcher.get_session_state("s1")
        assert state.flagged is False
        assert state.unflagged_by == "dr_smith"
        assert state.monitoring_frequency == MonitoringFrequency.NORMAL
        # History is preserved.
        assert [e.event_type for e in _events(dispatcher)] == [
            CrisisEventType.UNFLAGGED,
            CrisisEventType.FLAGGED,
        ]

    def test_unflag_requires_flagged_session(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        with pytest.raises(InvalidTransitionError):
            dispatcher.unflag_session("s1", "dr_smith")

    def test_reflag_after_unflag_writes_flagged(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.dispatch(_make_assessment(50))
        dispatcher.unflag_session("s1", "dr_smith")
        event = dispatcher.dispatch(_make_assessment(50))
        assert event.event_type == CrisisEventType.FLAGGED

    def test_update_risk_score(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.dispatch(_make_assessment(80))
        event = dispatcher.update_risk_score("s1", 40, Severity.MEDIUM, "dr_smith")
        assert event.event_type == CrisisEventType.RISK_SCORE_UPDATED
        assert event.previous_risk_score == 80
        state = dispatcher.get_session_state("s1")
        assert state.flagged is True
        assert state.risk_score == 40
        assert state.monitoring_frequency == MonitoringFrequency.HIGH

    def test_update_risk_score_unchanged_is_noop(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.dispatch(_make_assessment(80))
        assert dispatcher.update_risk_score("s1", 80, Severity.HIGH, "dr_smith") is None

    def test_lowered_score_resets_hysteresis_baseline(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.dispatch(_make_assessment(80))
        dispatcher.update_risk_score("s1", 40, Severity.MEDIUM, "dr_smith")
        event = dispatcher.dispatch(_make_assessment(55))
        assert event is not None
        assert event.previous_risk_score == 40


# ---------------------------------------------------------------------------
# 4. Read surfaces
# ---------------------------------------------------------------------------

class TestActiveCrisisSessions:
    def test_ordered_by_risk_then_recency(self, tmp_path):
        dispatcher = EscalationDispatcher(_make_db(tmp_path))
        for sid in ("a", "b", "c", "d"):
            dispatcher.register_session(sid)
        dispatcher.dispatch(_make_assessment(50, "a"))
        dispatcher.dispatch(_make_assessment(90, "b"))
        dispatcher.dispatch(_make_assessment(50, "c"))
        active = dispatcher.active_crisis_sessions()
        assert [s.session_id for s in active] == ["b", "c", "a"]

    def test_unflagged_sessions_excluded(self, tmp_path):
        dispatcher = _make_dispatcher(tmp_path)
        dispatcher.dispatch(_make_assessment(50))
        dispatcher.unflag_session("s1", "dr_smith")
        assert dispatcher.active_crisis_sessions() == []


# ---------------------------------------------------------------------------
# 5. Concurrency and atomicity
# ---------------------------------------------------------------------------

class TestConcurrency:
    def test_concurrent_dispatch_fires_once(self, tmp_path):
        """Near-simultaneous messages for one session flag it exactly once."""
        dispatcher = _make_dispatcher(tmp_path)
        results = []
        errors = []
        barrier = threading.Barrier(8)

        def _worker():
            barrier.wait()
            try:
                results.append(dispatcher.dispatch(_make_assessment(50)))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=_worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        fired = [r for r in results if r is not None]
        assert len(fired) == 1
        assert len(_events(dispatcher)) == 1

    def test_failed_audit_write_rolls_back_state(self, tmp_path, monkeypatch):
        dispatcher = _make_dispatcher(tmp_path)

        def _boom(*args, **kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr("crisiswatch.escalation.record_event", _boom)
        with pytest.raises(RuntimeError):
            dispatcher.dispatch(_make_assessment(80))

        state = dispatcher.get_session_state("s1")
        assert state.flagged is False
        assert state.risk_score == 0
        assert _events(dispatcher) == []
