"""
Clinical Review Workflow.

Retrospective human evaluation of a flagged session for safety, quality,
or compliance purposes.

**State machine:**

    PENDING -> IN_PROGRESS -> COMPLETED      (COMPLETED is terminal)

Reviews are requested automatically with type ``post_crisis`` whenever a
handoff is initiated at or above the policy's review threshold (70 by
default), or manually for ``quality_assurance``, ``compliance_audit`` and
``therapeutic_oversight`` reviews.

``compliance_status`` may only be set on the transition to COMPLETED.

Status transitions use an optimistic precondition: the row is updated only
if its stored status still equals the status the decision was based on.
If another reviewer got there first the caller receives a
``ConcurrencyError`` and must re-fetch.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from crisiswatch.audit import coerce_enum, record_event, validate_risk_score
from crisiswatch.errors import (
    ConcurrencyError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from crisiswatch.models import (
    ClinicalReviewRecord,
    ClinicalReviewUpdate,
    CrisisEventType,
    ReviewStatus,
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
from crisiswatch.storage import ClinicalReviewRow, Database, find_session

logger = logging.getLogger(__name__)


_VALID_TRANSITIONS: dict[ReviewStatus, set[ReviewStatus]] = {
    ReviewStatus.PENDING: {ReviewStatus.IN_PROGRESS},
    ReviewStatus.IN_PROGRESS: {ReviewStatus.COMPLETED},
    ReviewStatus.COMPLETED: set(),  # terminal state
}


def _method_for(actor: str) -> TriggerMethod:
    return TriggerMethod.SYSTEM if actor == "system" else TriggerMethod.MANUAL


class ClinicalReviewWorkflow:
    """Create and advance clinical review records."""

    def __init__(self, db: Database, notifier: Optional[Notifier] = None) -> None:
        self._db = db
        self._notifier = notifier or NullNotifier()

    # -- creation --

    def request_within(
        self,
        db_session: Session,
        session_id: str,
        risk_score: Optional[int],
        review_reason: str,
        review_type: ReviewType = ReviewType.POST_CRISIS,
        requested_by: str = "system",
    ) -> ClinicalReviewRow:
        """Insert a pending review and its audit event in the caller's transaction."""
        validate_risk_score(risk_score)
        review_type = coerce_enum(ReviewType, review_type, "review_type")
        if not review_reason or not review_reason.strip():
            raise ValidationError("review_reason is required.")
        if find_session(db_session, session_id) is None:
            raise NotFoundError(f"Unknown session '{session_id}'.")

        row = ClinicalReviewRow(
            session_id=session_id,
            risk_score=risk_score,
            review_reason=review_reason,
            review_type=review_type.value,
            status=ReviewStatus.PENDING.value,
            requested_at=datetime.now(timezone.utc),
            requested_by=requested_by,
        )
        db_session.add(row)
        db_session.flush()

        record_event(
            db_session,
            session_id=session_id,
            event_type=CrisisEventType.CLINICAL_REVIEW_REQUESTED,
            risk_score=risk_score,
            triggered_by=requested_by,
            trigger_method=_method_for(requested_by),
            intervention_details={
                "review_id": row.review_id,
                "review_type": review_type.value,
                "review_reason": review_reason,
            },
        )
        return row

    def announce(self, review: ClinicalReviewRecord) -> None:
        """Tell operators a review is waiting.  Call after commit."""
        score = review.risk_score or 0
        safe_notify(self._notifier, ADMIN_CHANNEL, NotificationEvent.CLINICAL_REVIEW_REQUIRED, {
            "session_id": review.session_id,
            "review_id": review.review_id,
            "risk_score": review.risk_score,
            "review_reason": review.review_reason,
            "review_type": review.review_type.value,
            "priority": "critical" if score > 70 else "high",
        })
        logger.info(
            "CLINICAL_REVIEW_REQUESTED",
            extra={"session_id": review.session_id, "review_id": review.review_id},
        )

    def flag_for_clinical_review(
        self,
        session_id: str,
        risk_score: Optional[int],
        review_reason: str,
        review_type: ReviewType = ReviewType.POST_CRISIS,
        requested_by: str = "system",
    ) -> ClinicalReviewRecord:
        """Request a clinical review for a session.

        Raises:
            ValidationError: If score, type, or reason is invalid.
            NotFoundError: If the session is not registered.
        """
        with self._db.transaction() as s:
            row = self.request_within(
                s, session_id, risk_score, review_reason, review_type, requested_by
            )
            review = ClinicalReviewRecord.model_validate(row)
        self.announce(review)
        return review

    # -- transitions --

    def update_clinical_review(
        self,
        review_id: int,
        status: ReviewStatus,
        data: Union[ClinicalReviewUpdate, dict[str, Any], None] = None,
        expected_status: Optional[ReviewStatus] = None,
        updated_by: str = "system",
    ) -> ClinicalReviewRecord:
        """Advance a review to ``status`` and record the reviewer's input.

        Args:
            review_id: The review to update.
            status: Target status.
            data: Optional ``assigned_to``, ``findings``, ``recommendations``,
                and (only when completing) ``compliance_status``.
            expected_status: If given, the stored status the caller last saw.
            updated_by: Actor recorded on the audit event.

        Raises:
            NotFoundError: If the review does not exist.
            InvalidTransitionError: If the stored status does not allow ``status``.
            ConcurrencyError: If the stored status changed underneath the caller.
            ValidationError: If ``compliance_status`` is set before completion.
        """
        status = coerce_enum(ReviewStatus, status, "status")
        if data is None:
            data = ClinicalReviewUpdate()
        elif isinstance(data, dict):
            try:
                data = ClinicalReviewUpdate(**data)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid clinical review data: {exc}") from exc
        if data.compliance_status is not None and status != ReviewStatus.COMPLETED:
            raise ValidationError(
                "compliance_status can only be set when completing a review."
            )

        with self._db.transaction() as s:
            row = s.get(ClinicalReviewRow, review_id)
            if row is None:
                raise NotFoundError(f"Unknown clinical review '{review_id}'.")
            current = ReviewStatus(row.status)
            if expected_status is not None:
                expected = coerce_enum(ReviewStatus, expected_status, "expected_status")
                if expected != current:
                    raise ConcurrencyError(
                        f"Review {review_id} is {current.value}, expected "
                        f"{expected.value}. Re-fetch and retry."
                    )
            allowed = _VALID_TRANSITIONS[current]
            if status not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition review {review_id} from {current.value} to "
                    f"{status.value}. Allowed transitions: {[t.value for t in allowed]}"
                )

            values: dict[str, Any] = {"status": status.value}
            if data.assigned_to:
                values["assigned_to"] = data.assigned_to
            if data.findings:
                values["findings"] = data.findings
            if data.recommendations:
                values["recommendations"] = data.recommendations
            if status == ReviewStatus.COMPLETED:
                values["reviewed_at"] = datetime.now(timezone.utc)
                if data.compliance_status is not None:
                    values["compliance_status"] = data.compliance_status.value

            result = s.execute(
                update(ClinicalReviewRow)
                .where(
                    ClinicalReviewRow.review_id == review_id,
                    ClinicalReviewRow.status == current.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyError(
                    f"Review {review_id} changed while updating. Re-fetch and retry."
                )
            s.refresh(row)

            record_event(
                s,
                session_id=row.session_id,
                event_type=CrisisEventType.CLINICAL_REVIEW_UPDATED,
                risk_score=row.risk_score,
                triggered_by=updated_by,
                trigger_method=_method_for(updated_by),
                intervention_details={
                    "review_id": review_id,
                    "status": status.value,
                    "previous_status": current.value,
                    "assigned_to": row.assigned_to,
                    "compliance_status": row.compliance_status,
                },
            )
            review = ClinicalReviewRecord.model_validate(row)

        safe_notify(self._notifier, ADMIN_CHANNEL, NotificationEvent.CLINICAL_REVIEW_UPDATED, {
            "review_id": review_id,
            "session_id": review.session_id,
            "status": status.value,
        })
        logger.info(
            "CLINICAL_REVIEW_UPDATED",
            extra={"review_id": review_id, "status": status.value, "previous_status": current.value},
        )
        return review

    # -- read surfaces --

    def get_review(self, review_id: int) -> ClinicalReviewRecord:
        with self._db.transaction() as s:
            row = s.get(ClinicalReviewRow, review_id)
            if row is None:
                raise NotFoundError(f"Unknown clinical review '{review_id}'.")
            return ClinicalReviewRecord.model_validate(row)

    def pending_clinical_reviews(self) -> list[ClinicalReviewRecord]:
        """Pending reviews, highest risk first, then oldest request first."""
        stmt = (
            select(ClinicalReviewRow)
            .where(ClinicalReviewRow.status == ReviewStatus.PENDING.value)
            .order_by(
                ClinicalReviewRow.risk_score.desc().nulls_last(),
                ClinicalReviewRow.requested_at.asc(),
                ClinicalReviewRow.review_id.asc(),
            )
        )
        with self._db.transaction() as s:
            return [ClinicalReviewRecord.model_validate(r) for r in s.scalars(stmt)]

    def session_clinical_reviews(self, session_id: str) -> list[ClinicalReviewRecord]:
        stmt = (
            select(ClinicalReviewRow)
            .where(ClinicalReviewRow.session_id == session_id)
            .order_by(ClinicalReviewRow.requested_at.desc(), ClinicalReviewRow.review_id.desc())
        )
        with self._db.transaction() as s:
            return [ClinicalReviewRecord.model_validate(r) for r in s.scalars(stmt)]
