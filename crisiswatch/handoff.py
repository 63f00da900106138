"""
Human Handoff Workflow.

Tracks the transfer of responsibility for a session to a human-staffed
channel: a crisis hotline, a clinician, emergency services, or a
supervisor.

**State machine:**

    PENDING -> IN_PROGRESS -> COMPLETED
       |            |
       +------------+-------> CANCELLED

``COMPLETED`` and ``CANCELLED`` are terminal; any transition attempted from
them raises ``InvalidTransitionError``.

Handoffs are created automatically for high-severity escalations
(``crisis_hotline``) or manually for any type.  Initiating a handoff at or
above the clinical review threshold also requests a ``post_crisis``
clinical review in the same transaction.

Status transitions use an optimistic precondition (the stored status must
still be the one the decision was based on) so that two operators acting
at once cannot silently overwrite each other; the loser receives a
``ConcurrencyError``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update

from crisiswatch.audit import coerce_enum, record_event, validate_risk_score
from crisiswatch.clinical_review import ClinicalReviewWorkflow
from crisiswatch.config import DEFAULT_POLICY, ScoringPolicy
from crisiswatch.errors import (
    ConcurrencyError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from crisiswatch.models import (
    ClinicalReviewRecord,
    CrisisEventType,
    HandoffRecord,
    HandoffStatus,
    HandoffType,
    ReviewType,
    TriggerMethod,
)
from crisiswatch.notifications import (
    ADMIN_CHANNEL,
    NotificationEvent,
    Notifier,
    NullNotifier,
    safe_notify,
)
from crisiswatch.storage import Database, HumanHandoffRow, find_session

logger = logging.getLogger(__name__)


_VALID_TRANSITIONS: dict[HandoffStatus, set[HandoffStatus]] = {
    HandoffStatus.PENDING: {HandoffStatus.IN_PROGRESS, HandoffStatus.CANCELLED},
    HandoffStatus.IN_PROGRESS: {HandoffStatus.COMPLETED, HandoffStatus.CANCELLED},
    HandoffStatus.COMPLETED: set(),  # terminal state
    HandoffStatus.CANCELLED: set(),  # terminal state
}


def _method_for(actor: str) -> TriggerMethod:
    return TriggerMethod.SYSTEM if actor == "system" else TriggerMethod.MANUAL


class HandoffResult:
    """A newly initiated handoff and the review it requested, if any."""

    def __init__(
        self,
        handoff: HandoffRecord,
        review: Optional[ClinicalReviewRecord] = None,
    ) -> None:
        self.handoff = handoff
        self.review = review

    def __repr__(self) -> str:
        return (
            f"HandoffResult(handoff_id={self.handoff.handoff_id}, "
            f"review_id={self.review.review_id if self.review else None})"
        )


class HandoffWorkflow:
    """Create and advance human handoff records."""

    def __init__(
        self,
        db: Database,
        reviews: Optional[ClinicalReviewWorkflow] = None,
        notifier: Optional[Notifier] = None,
        policy: ScoringPolicy = DEFAULT_POLICY,
    ) -> None:
        self._db = db
        self._notifier = notifier or NullNotifier()
        self._reviews = reviews or ClinicalReviewWorkflow(db, self._notifier)
        self.policy = policy

    # -- creation --

    def initiate_handoff(
        self,
        session_id: str,
        risk_score: int,
        handoff_type: HandoffType = HandoffType.CRISIS_HOTLINE,
        initiated_by: str = "system",
        notes: Optional[str] = None,
    ) -> HandoffResult:
        """Open a pending handoff for a session.

        Raises:
            ValidationError: If the score or handoff type is invalid.
            NotFoundError: If the session is not registered.
        """
        if risk_score is None:
            raise ValidationError("risk_score is required.")
        validate_risk_score(risk_score)
        handoff_type = coerce_enum(HandoffType, handoff_type, "handoff_type")

        review: Optional[ClinicalReviewRecord] = None
        with self._db.transaction() as s:
            if find_session(s, session_id) is None:
                raise NotFoundError(f"Unknown session '{session_id}'.")

            row = HumanHandoffRow(
                session_id=session_id,
                risk_score=risk_score,
                handoff_type=handoff_type.value,
                status=HandoffStatus.PENDING.value,
                initiated_at=datetime.now(timezone.utc),
                initiated_by=initiated_by,
                notes=notes,
            )
            s.add(row)
            s.flush()

            record_event(
                s,
                session_id=session_id,
                event_type=CrisisEventType.HANDOFF_INITIATED,
                risk_score=risk_score,
                triggered_by=initiated_by,
                trigger_method=_method_for(initiated_by),
                intervention_details={
                    "handoff_id": row.handoff_id,
                    "handoff_type": handoff_type.value,
                },
                notes=notes,
            )
            handoff = HandoffRecord.model_validate(row)

            if risk_score >= self.policy.clinical_review_min_score:
                review_row = self._reviews.request_within(
                    s,
                    session_id,
                    risk_score,
                    f"High-risk crisis detected (score: {risk_score}) - "
                    "Post-incident review required",
                    ReviewType.POST_CRISIS,
                    initiated_by,
                )
                review = ClinicalReviewRecord.model_validate(review_row)

        safe_notify(self._notifier, ADMIN_CHANNEL, NotificationEvent.HANDOFF_REQUIRED, {
            "session_id": session_id,
            "handoff_id": handoff.handoff_id,
            "handoff_type": handoff_type.value,
            "risk_score": risk_score,
            "message": f"Human handoff initiated - {handoff_type.value} - action required",
        })
        if review is not None:
            self._reviews.announce(review)

        logger.info(
            "HANDOFF_INITIATED",
            extra={
                "session_id": session_id,
                "handoff_id": handoff.handoff_id,
                "handoff_type": handoff_type.value,
                "risk_score": risk_score,
            },
        )
        return HandoffResult(handoff, review)

    # -- transitions --

    def update_handoff_status(
        self,
        handoff_id: int,
        status: HandoffStatus,
        assigned_to: Optional[str] = None,
        notes: Optional[str] = None,
        outcome: Optional[str] = None,
        external_reference: Optional[str] = None,
        expected_status: Optional[HandoffStatus] = None,
        updated_by: Optional[str] = None,
    ) -> HandoffRecord:
        """Move a handoff to ``status``.

        Args:
            handoff_id: The handoff to update.
            status: Target status.
            assigned_to: Person taking responsibility, if known.
            notes: Free-text notes to store on the record.
            outcome: Outcome description (typically on completion).
            external_reference: Reference number from an external service.
            expected_status: If given, the stored status the caller last saw.
            updated_by: Actor recorded on the audit event; defaults to
                ``assigned_to`` or ``"system"``.

        Raises:
            NotFoundError: If the handoff does not exist.
            InvalidTransitionError: If the stored status does not allow ``status``.
            ConcurrencyError: If the stored status changed underneath the caller.
        """
        status = coerce_enum(HandoffStatus, status, "status")
        actor = updated_by or assigned_to or "system"

        with self._db.transaction() as s:
            row = s.get(HumanHandoffRow, handoff_id)
            if row is None:
                raise NotFoundError(f"Unknown handoff '{handoff_id}'.")
            current = HandoffStatus(row.status)
            if expected_status is not None:
                expected = coerce_enum(HandoffStatus, expected_status, "expected_status")
                if expected != current:
                    raise ConcurrencyError(
                        f"Handoff {handoff_id} is {current.value}, expected "
                        f"{expected.value}. Re-fetch and retry."
                    )
            allowed = _VALID_TRANSITIONS[current]
            if status not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition handoff {handoff_id} from {current.value} to "
                    f"{status.value}. Allowed transitions: {[t.value for t in allowed]}"
                )

            values: dict[str, Any] = {"status": status.value}
            if assigned_to:
                values["assigned_to"] = assigned_to
            if notes:
                values["notes"] = notes
            if outcome:
                values["outcome"] = outcome
            if external_reference:
                values["external_reference"] = external_reference
            if status == HandoffStatus.COMPLETED:
                values["completed_at"] = datetime.now(timezone.utc)

            result = s.execute(
                update(HumanHandoffRow)
                .where(
                    HumanHandoffRow.handoff_id == handoff_id,
                    HumanHandoffRow.status == current.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyError(
                    f"Handoff {handoff_id} changed while updating. Re-fetch and retry."
                )
            s.refresh(row)

            record_event(
                s,
                session_id=row.session_id,
                event_type=CrisisEventType.HANDOFF_STATUS_CHANGED,
                risk_score=row.risk_score,
                triggered_by=actor,
                trigger_method=_method_for(actor),
                intervention_details={
                    "handoff_id": handoff_id,
                    "status": status.value,
                    "previous_status": current.value,
                    "assigned_to": row.assigned_to,
                },
                notes=notes,
            )
            handoff = HandoffRecord.model_validate(row)

        safe_notify(self._notifier, ADMIN_CHANNEL, NotificationEvent.HANDOFF_STATUS_UPDATED, {
            "handoff_id": handoff_id,
            "session_id": handoff.session_id,
            "status": status.value,
            "assigned_to": handoff.assigned_to,
        })
        logger.info(
            "HANDOFF_STATUS_UPDATED",
            extra={"handoff_id": handoff_id, "status": status.value, "previous_status": current.value},
        )
        return handoff

    # -- read surfaces --

    def get_handoff(self, handoff_id: int) -> HandoffRecord:
        with self._db.transaction() as s:
            row = s.get(HumanHandoffRow, handoff_id)
            if row is None:
                raise NotFoundError(f"Unknown handoff '{handoff_id}'.")
            return HandoffRecord.model_validate(row)

    def session_handoffs(self, session_id: str) -> list[HandoffRecord]:
        stmt = (
            select(HumanHandoffRow)
            .where(HumanHandoffRow.session_id == session_id)
            .order_by(HumanHandoffRow.initiated_at.desc(), HumanHandoffRow.handoff_id.desc())
        )
        with self._db.transaction() as s:
            return [HandoffRecord.model_validate(r) for r in s.scalars(stmt)]

    def pending_handoffs(self) -> list[HandoffRecord]:
        """Pending handoffs, highest risk first, then oldest first."""
        stmt = (
            select(HumanHandoffRow)
            .where(HumanHandoffRow.status == HandoffStatus.PENDING.value)
            .order_by(
                HumanHandoffRow.risk_score.desc(),
                HumanHandoffRow.initiated_at.asc(),
                HumanHandoffRow.handoff_id.asc(),
            )
        )
        with self._db.transaction() as s:
            return [HandoffRecord.model_validate(r) for r in s.scalars(stmt)]
