"""
Escalation Dispatcher -- Per-Session Crisis State Machine.

Each session is either ``UNFLAGGED`` or ``FLAGGED`` at some severity.

**State machine:**

    UNFLAGGED -> FLAGGED            (flag)
    FLAGGED   -> FLAGGED            (severity or score change)
    FLAGGED   -> UNFLAGGED          (operator unflag)

**Escalation rule (hysteresis):**  an automatically scored message
escalates the session iff

    new_score > flag_threshold  AND
    (session is UNFLAGGED  OR  new_score > stored_score + hysteresis_delta)

so small jitter around the threshold never re-fires an escalation.

**Atomicity:**  every transition updates the session row and appends
exactly one crisis event in the same transaction.  If either write fails
both are rolled back and the error propagates; nothing is retried here.

**Idempotence:**  a transition whose target severity and score equal the
stored ones writes nothing.

**Concurrency:**  the read-decide-write sequence for one session runs under
that session's mutex and a row lock on the session record, so two
near-simultaneous messages cannot both read a stale score and double-fire.
Different sessions never contend.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select

from crisiswatch.audit import coerce_enum, record_event, validate_risk_score
from crisiswatch.config import DEFAULT_POLICY, ScoringPolicy
from crisiswatch.errors import InvalidTransitionError, NotFoundError, ValidationError
from crisiswatch.models import (
    CrisisEventRecord,
    CrisisEventType,
    MonitoringFrequency,
    SessionCrisisState,
    Severity,
    TriggerMethod,
    monitoring_for_severity,
)
from crisiswatch.risk import RiskAssessment, severity_for_score
from crisiswatch.storage import (
    CrisisSessionRow,
    Database,
    find_session,
    load_session_for_update,
)

logger = logging.getLogger(__name__)


class CrisisPhase(str, enum.Enum):
    UNFLAGGED = "unflagged"
    FLAGGED = "flagged"


_VALID_TRANSITIONS: dict[CrisisPhase, set[CrisisPhase]] = {
    CrisisPhase.UNFLAGGED: {CrisisPhase.FLAGGED},
    CrisisPhase.FLAGGED: {CrisisPhase.FLAGGED, CrisisPhase.UNFLAGGED},
}


def _phase(row: CrisisSessionRow) -> CrisisPhase:
    return CrisisPhase.FLAGGED if row.flagged else CrisisPhase.UNFLAGGED


class EscalationDispatcher:
    """Owns every mutation of session crisis state.

    Automatic escalations arrive through ``dispatch()``; operators use
    ``flag_session()``, ``unflag_session()`` and ``update_risk_score()``.
    Each returns the crisis event it wrote, or ``None`` when nothing
    changed.
    """

    def __init__(self, db: Database, policy: ScoringPolicy = DEFAULT_POLICY) -> None:
        self._db = db
        self.policy = policy

    # -- helpers --

    def _validate_transition(self, row: CrisisSessionRow, target: CrisisPhase) -> None:
        current = _phase(row)
        allowed = _VALID_TRANSITIONS[current]
        if target not in allowed:
            raise InvalidTransitionError(
                f"Session '{row.session_id}' cannot transition from {current.value} "
                f"to {target.value}. Allowed transitions: {[s.value for s in allowed]}"
            )

    def _validate_score_and_severity(self, risk_score: int, severity: Any) -> Severity:
        validate_risk_score(risk_score)
        severity = coerce_enum(Severity, severity, "severity")
        expected = severity_for_score(risk_score, self.policy)
        if severity != expected:
            raise ValidationError(
                f"Severity '{severity.value}' does not match risk score {risk_score} "
                f"(expected '{expected.value}')."
            )
        return severity

    def should_escalate(self, state: SessionCrisisState, new_score: int) -> bool:
        """Apply the hysteresis rule to a stored state and a new score."""
        if new_score <= self.policy.flag_threshold:
            return False
        if not state.flagged:
            return True
        return new_score > state.risk_score + self.policy.hysteresis_delta

    def _apply_flag(
        self,
        db_session,
        row: CrisisSessionRow,
        severity: Severity,
        risk_score: int,
        triggered_by: str,
        trigger_method: TriggerMethod,
        message_ref: Optional[str],
        factors: Any,
        notes: Optional[str],
    ) -> Optional[CrisisEventRecord]:
        self._validate_transition(row, CrisisPhase.FLAGGED)

        previous_severity = Severity(row.severity)
        previous_score = row.risk_score
        if row.flagged and previous_severity == severity and previous_score == risk_score:
            return None

        if not row.flagged:
            event_type = CrisisEventType.FLAGGED
        elif previous_severity != severity:
            event_type = CrisisEventType.SEVERITY_CHANGED
        else:
            event_type = CrisisEventType.RISK_SCORE_UPDATED

        row.flagged = True
        row.severity = severity.value
        row.risk_score = risk_score
        row.flagged_at = datetime.now(timezone.utc)
        row.flagged_by = triggered_by
        row.monitoring_frequency = monitoring_for_severity(severity).value

        event = record_event(
            db_session,
            session_id=row.session_id,
            event_type=event_type,
            severity=severity,
            previous_severity=previous_severity,
            risk_score=risk_score,
            previous_risk_score=previous_score,
            triggered_by=triggered_by,
            trigger_method=trigger_method,
            message_ref=message_ref,
            risk_factors=factors,
            notes=notes,
        )
        logger.info(
            "SESSION_FLAGGED",
            extra={
                "session_id": row.session_id,
                "event_type": event_type.value,
                "severity": severity.value,
                "previous_severity": previous_severity.value,
                "risk_score": risk_score,
                "previous_risk_score": previous_score,
                "trigger_method": trigger_method.value,
            },
        )
        return CrisisEventRecord.model_validate(event)

    # -- session registry --

    def register_session(self, session_id: str) -> SessionCrisisState:
        """Create the session's crisis record if it does not exist yet."""
        if not session_id:
            raise ValidationError("session_id is required.")
        with self._db.locks.hold(session_id):
            with self._db.transaction() as s:
                row = find_session(s, session_id)
                if row is None:
                    row = CrisisSessionRow(
                        session_id=session_id,
                        flagged=False,
                        severity=Severity.NONE.value,
                        risk_score=0,
                        monitoring_frequency=MonitoringFrequency.NORMAL.value,
                        created_at=datetime.now(timezone.utc),
                    )
                    s.add(row)
                    s.flush()
                    logger.info("SESSION_REGISTERED", extra={"session_id": session_id})
                return SessionCrisisState.model_validate(row)

    def get_session_state(self, session_id: str) -> SessionCrisisState:
        with self._db.transaction() as s:
            row = find_session(s, session_id)
            if row is None:
                raise NotFoundError(f"Unknown session '{session_id}'.")
            return SessionCrisisState.model_validate(row)

    # -- automatic escalation --

    def dispatch(
        self,
        assessment: RiskAssessment,
        triggered_by: str = "system",
    ) -> Optional[CrisisEventRecord]:
        """Escalate the session if ``assessment`` satisfies the hysteresis rule.

        Returns:
            The crisis event written, or ``None`` if the session was left as is.

        Raises:
            NotFoundError: If the session is not registered.
            PersistenceError: If the transaction fails (fully rolled back).
        """
        session_id = assessment.session_id
        with self._db.locks.hold(session_id):
            with self._db.transaction() as s:
                row = load_session_for_update(s, session_id)
                state = SessionCrisisState.model_validate(row)
                if not self.should_escalate(state, assessment.risk_score):
                    logger.debug(
                        "ESCALATION_NOT_REQUIRED",
                        extra={
                            "session_id": session_id,
                            "risk_score": assessment.risk_score,
                            "stored_score": state.risk_score,
                            "flagged": state.flagged,
                        },
                    )
                    return None
                return self._apply_flag(
                    s,
                    row,
                    severity=assessment.severity,
                    risk_score=assessment.risk_score,
                    triggered_by=triggered_by,
                    trigger_method=TriggerMethod.AUTO,
                    message_ref=assessment.message_ref,
                    factors={
                        "factors": assessment.factors,
                        "breakdown": assessment.breakdown.model_dump(),
                    },
                    notes=None,
                )

    # -- operator transitions --

    def flag_session(
        self,
        session_id: str,
        severity: Severity,
        risk_score: int,
        triggered_by: str,
        trigger_method: TriggerMethod = TriggerMethod.MANUAL,
        message_ref: Optional[str] = None,
        factors: Any = None,
        notes: Optional[str] = None,
    ) -> Optional[CrisisEventRecord]:
        """Flag (or re-flag) a session at the given severity and score.

        Raises:
            ValidationError: If the score is out of range or the severity
                does not match the score.
            NotFoundError: If the session is not registered.
        """
        severity = self._validate_score_and_severity(risk_score, severity)
        trigger_method = coerce_enum(TriggerMethod, trigger_method, "trigger_method")
        with self._db.locks.hold(session_id):
            with self._db.transaction() as s:
                row = load_session_for_update(s, session_id)
                return self._apply_flag(
                    s, row, severity, risk_score, triggered_by,
                    trigger_method, message_ref, factors, notes,
                )

    def unflag_session(
        self,
        session_id: str,
        unflagged_by: str,
        notes: Optional[str] = None,
    ) -> CrisisEventRecord:
        """Return a flagged session to normal monitoring.

        Historical events are untouched; one ``unflagged`` event is appended.

        Raises:
            InvalidTransitionError: If the session is not currently flagged.
            NotFoundError: If the session is not registered.
        """
        with self._db.locks.hold(session_id):
            with self._db.transaction() as s:
                row = load_session_for_update(s, session_id)
                self._validate_transition(row, CrisisPhase.UNFLAGGED)

                row.flagged = False
                row.unflagged_at = datetime.now(timezone.utc)
                row.unflagged_by = unflagged_by
                row.monitoring_frequency = MonitoringFrequency.NORMAL.value

                event = record_event(
                    s,
                    session_id=session_id,
                    event_type=CrisisEventType.UNFLAGGED,
                    severity=Severity(row.severity),
                    risk_score=row.risk_score,
                    triggered_by=unflagged_by,
                    trigger_method=TriggerMethod.MANUAL,
                    notes=notes,
                )
                logger.info(
                    "SESSION_UNFLAGGED",
                    extra={"session_id": session_id, "unflagged_by": unflagged_by},
                )
                return CrisisEventRecord.model_validate(event)

    def update_risk_score(
        self,
        session_id: str,
        new_score: int,
        new_severity: Severity,
        changed_by: str,
        notes: Optional[str] = None,
    ) -> Optional[CrisisEventRecord]:
        """Manually correct a session's stored score and severity.

        The flag itself is left as is; while flagged, the monitoring
        cadence follows the new severity.
        """
        new_severity = self._validate_score_and_severity(new_score, new_severity)
        with self._db.locks.hold(session_id):
            with self._db.transaction() as s:
                row = load_session_for_update(s, session_id)
                previous_severity = Severity(row.severity)
                previous_score = row.risk_score
                if previous_severity == new_severity and previous_score == new_score:
                    return None

                row.risk_score = new_score
                row.severity = new_severity.value
                if row.flagged:
                    row.monitoring_frequency = monitoring_for_severity(new_severity).value

                event = record_event(
                    s,
                    session_id=session_id,
                    event_type=CrisisEventType.RISK_SCORE_UPDATED,
                    severity=new_severity,
                    previous_severity=previous_severity,
                    risk_score=new_score,
                    previous_risk_score=previous_score,
                    triggered_by=changed_by,
                    trigger_method=TriggerMethod.MANUAL,
                    notes=notes,
                )
                logger.info(
                    "RISK_SCORE_UPDATED",
                    extra={
                        "session_id": session_id,
                        "risk_score": new_score,
                        "previous_risk_score": previous_score,
                        "changed_by": changed_by,
                    },
                )
                return CrisisEventRecord.model_validate(event)

    # -- read surfaces --

    def active_crisis_sessions(self) -> list[SessionCrisisState]:
        """Flagged sessions, highest risk first, then most recently flagged."""
        stmt = (
            select(CrisisSessionRow)
            .where(CrisisSessionRow.flagged.is_(True))
            .order_by(CrisisSessionRow.risk_score.desc(), CrisisSessionRow.flagged_at.desc())
        )
        with self._db.transaction() as s:
            return [SessionCrisisState.model_validate(r) for r in s.scalars(stmt)]
