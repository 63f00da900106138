"""
Intervention Executor -- Graduated Response.

Given ``(session_id, severity, risk_score)`` for a dispatcher firing, picks
the severity's response, writes **exactly one** intervention action (plus
an ``intervention_triggered`` crisis event in the same transaction), and
hands delivery to the injected ``Notifier``:

* LOW    -- self-help resources to the user's conversation.
* MEDIUM -- supervisor-review alert to operators and a therapeutic
  check-in to the user.  The raised monitoring cadence is already set by
  the dispatcher's state transition.
* HIGH   -- emergency hotlines to the user, a critical alert to operators,
  and a ``crisis_hotline`` human handoff (which requests a post-crisis
  clinical review at or above the review threshold).

Notifications are sent only after the action has been committed.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select, update

from crisiswatch.audit import coerce_enum, record_event, validate_risk_score
from crisiswatch.errors import NotFoundError, ValidationError
from crisiswatch.handoff import HandoffResult, HandoffWorkflow
from crisiswatch.models import (
    CrisisEventType,
    HandoffType,
    InterventionRecord,
    InterventionType,
    Severity,
    TriggerMethod,
)
from crisiswatch.notifications import (
    ADMIN_CHANNEL,
    NotificationEvent,
    Notifier,
    NullNotifier,
    safe_notify,
    session_channel,
)
from crisiswatch.storage import Database, InterventionActionRow, find_session

logger = logging.getLogger(__name__)


LOW_RISK_RESOURCES = ["coping_strategies", "relaxation_techniques", "grounding_exercises"]
MEDIUM_RISK_ALERTS = ["supervisor_review", "increased_monitoring"]

CRISIS_HOTLINES = {
    "suicide_prevention": "988",
    "crisis_text": "Text HOME to 741741",
    "emergency": "911",
}

SELF_HELP_MESSAGE = (
    "I notice you're experiencing some distress. Some things that might help "
    "right now: the 5-4-3-2-1 grounding technique, box breathing (in 4, hold 4, "
    "out 4, hold 4), or progressive muscle relaxation. I'm here to talk."
)
CHECK_IN_MESSAGE = (
    "I want to make sure you're okay. What you're feeling is valid, and you're "
    "not alone. If you need immediate support, call or text 988 (24/7) or "
    "text HOME to 741741."
)
EMERGENCY_MESSAGE = (
    "If you're in crisis or having thoughts of harming yourself, please reach "
    "out now: call or text 988, text HOME to 741741, or call 911 if you're in "
    "immediate danger. Trained crisis counselors are ready to help."
)


class InterventionOutcome:
    """What the executor did for one firing."""

    def __init__(
        self,
        action: InterventionRecord,
        handoff: Optional[HandoffResult] = None,
    ) -> None:
        self.action = action
        self.handoff = handoff

    def __repr__(self) -> str:
        return (
            f"InterventionOutcome(action_type='{self.action.action_type.value}', "
            f"handoff={self.handoff!r})"
        )


class InterventionExecutor:
    """Severity-keyed response to an escalation."""

    def __init__(
        self,
        db: Database,
        handoffs: HandoffWorkflow,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._db = db
        self._handoffs = handoffs
        self._notifier = notifier or NullNotifier()
        self._handlers = {
            Severity.LOW: self._respond_low,
            Severity.MEDIUM: self._respond_medium,
            Severity.HIGH: self._respond_high,
        }

    def execute(self, session_id: str, severity: Severity, risk_score: int) -> InterventionOutcome:
        """Run the response for ``severity``.

        Raises:
            ValidationError: If the score is invalid or severity has no response.
            NotFoundError: If the session is not registered.
        """
        if risk_score is None:
            raise ValidationError("risk_score is required.")
        validate_risk_score(risk_score)
        severity = coerce_enum(Severity, severity, "severity")
        handler = self._handlers.get(severity)
        if handler is None:
            raise ValidationError(f"No intervention is defined for severity '{severity.value}'.")
        return handler(session_id, risk_score)

    # -- responses --

    def _respond_low(self, session_id: str, risk_score: int) -> InterventionOutcome:
        action = self.log_intervention_action(
            session_id,
            InterventionType.LOW_RISK_RESOURCES,
            {"riskScore": risk_score, "resourcesProvided": list(LOW_RISK_RESOURCES)},
            risk_score=risk_score,
        )
        safe_notify(self._notifier, session_channel(session_id), NotificationEvent.RESOURCES_OFFERED, {
            "intervention_type": "low_risk_self_help",
            "risk_score": risk_score,
            "content": SELF_HELP_MESSAGE,
        })
        logger.info("LOW_RISK_INTERVENTION", extra={"session_id": session_id, "risk_score": risk_score})
        return InterventionOutcome(action)

    def _respond_medium(self, session_id: str, risk_score: int) -> InterventionOutcome:
        action = self.log_intervention_action(
            session_id,
            InterventionType.MEDIUM_RISK_ALERT,
            {
                "riskScore": risk_score,
                "alertsSent": list(MEDIUM_RISK_ALERTS),
                "therapeuticCheckIn": True,
            },
            risk_score=risk_score,
        )
        safe_notify(self._notifier, ADMIN_CHANNEL, NotificationEvent.SUPERVISOR_REVIEW_REQUIRED, {
            "session_id": session_id,
            "severity": Severity.MEDIUM.value,
            "risk_score": risk_score,
            "priority": "high",
            "message": f"Session requires supervisor review - Risk score: {risk_score}",
        })
        safe_notify(self._notifier, session_channel(session_id), NotificationEvent.RESOURCES_OFFERED, {
            "intervention_type": "medium_risk_therapeutic_checkin",
            "risk_score": risk_score,
            "content": CHECK_IN_MESSAGE,
        })
        logger.info("MEDIUM_RISK_INTERVENTION", extra={"session_id": session_id, "risk_score": risk_score})
        return InterventionOutcome(action)

    def _respond_high(self, session_id: str, risk_score: int) -> InterventionOutcome:
        action = self.log_intervention_action(
            session_id,
            InterventionType.HIGH_RISK_EMERGENCY,
            {
                "riskScore": risk_score,
                "emergencyProtocol": "activated",
                "hotlineDisplayed": True,
                "handoffInitiated": True,
            },
            risk_score=risk_score,
        )
        emergency = {
            "session_id": session_id,
            "severity": Severity.HIGH.value,
            "risk_score": risk_score,
            "hotlines": dict(CRISIS_HOTLINES),
        }
        safe_notify(self._notifier, session_channel(session_id), NotificationEvent.CRISIS_EMERGENCY, {
            **emergency,
            "content": EMERGENCY_MESSAGE,
        })
        safe_notify(self._notifier, ADMIN_CHANNEL, NotificationEvent.CRISIS_EMERGENCY, {
            **emergency,
            "priority": "critical",
            "message": f"HIGH RISK: immediate attention required - Risk score: {risk_score}",
        })

        handoff = self._handoffs.initiate_handoff(
            session_id,
            risk_score,
            HandoffType.CRISIS_HOTLINE,
            notes="Automatic handoff for high-risk escalation",
        )
        logger.warning(
            "HIGH_RISK_INTERVENTION",
            extra={
                "session_id": session_id,
                "risk_score": risk_score,
                "handoff_id": handoff.handoff.handoff_id,
            },
        )
        return InterventionOutcome(action, handoff)

    # -- action log --

    def log_intervention_action(
        self,
        session_id: str,
        action_type: InterventionType,
        details: dict[str, Any],
        risk_score: Optional[int] = None,
        performed_by: str = "system",
    ) -> InterventionRecord:
        """Append an intervention action and its crisis event.

        ``risk_score`` falls back to ``details["riskScore"]`` when omitted.
        """
        action_type = coerce_enum(InterventionType, action_type, "action_type")
        if risk_score is None:
            risk_score = details.get("riskScore")
        validate_risk_score(risk_score)

        with self._db.transaction() as s:
            if find_session(s, session_id) is None:
                raise NotFoundError(f"Unknown session '{session_id}'.")
            row = InterventionActionRow(
                session_id=session_id,
                action_type=action_type.value,
                risk_score=risk_score,
                details=dict(details),
                performed_by=performed_by,
            )
            s.add(row)
            s.flush()
            record_event(
                s,
                session_id=session_id,
                event_type=CrisisEventType.INTERVENTION_TRIGGERED,
                risk_score=risk_score,
                triggered_by=performed_by,
                trigger_method=TriggerMethod.SYSTEM if performed_by == "system" else TriggerMethod.MANUAL,
                intervention_details={"action_id": row.action_id, "action_type": action_type.value},
            )
            return InterventionRecord.model_validate(row)

    def set_intervention_outcome(
        self,
        action_id: int,
        outcome: str,
        notes: Optional[str] = None,
    ) -> InterventionRecord:
        """Record what came of an intervention.  Only ``outcome``/``notes`` change."""
        if not outcome or not outcome.strip():
            raise ValidationError("outcome is required.")
        values: dict[str, Any] = {"outcome": outcome}
        if notes is not None:
            values["notes"] = notes
        with self._db.transaction() as s:
            row = s.get(InterventionActionRow, action_id)
            if row is None:
                raise NotFoundError(f"Unknown intervention action '{action_id}'.")
            s.execute(
                update(InterventionActionRow)
                .where(InterventionActionRow.action_id == action_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            s.refresh(row)
            logger.info("INTERVENTION_OUTCOME_SET", extra={"action_id": action_id})
            return InterventionRecord.model_validate(row)

    def session_interventions(self, session_id: str) -> list[InterventionRecord]:
        """All intervention actions for a session, newest first."""
        stmt = (
            select(InterventionActionRow)
            .where(InterventionActionRow.session_id == session_id)
            .order_by(
                InterventionActionRow.performed_at.desc(),
                InterventionActionRow.action_id.desc(),
            )
        )
        with self._db.transaction() as s:
            return [InterventionRecord.model_validate(r) for r in s.scalars(stmt)]
