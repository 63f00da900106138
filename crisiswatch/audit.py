"""
Append-Only Crisis Event Log.

Every state-affecting operation in CrisisWatch (flagging, unflagging,
severity and score changes, interventions, handoff and clinical review
lifecycle steps) writes exactly one ``crisis_events`` row *inside the same
transaction* as the state change it describes.  Rows are never updated
or deleted through this interface.

``record_event()`` is the single write path and is always called with the
caller's open transaction.  ``CrisisEventLog`` is the read side: per-session
audit trails, filtered queries, and a JSON-serializable export bundle for
compliance review.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from crisiswatch.errors import ValidationError
from crisiswatch.models import (
    CrisisEventRecord,
    CrisisEventType,
    Severity,
    TriggerMethod,
)
from crisiswatch.storage import CrisisEventRow, Database

logger = logging.getLogger(__name__)


def _value(v: Any) -> Any:
    return v.value if isinstance(v, enum.Enum) else v


def validate_risk_score(score: Optional[int]) -> None:
    """Raise ``ValidationError`` unless ``score`` is an int in [0, 100]."""
    if score is None:
        return
    if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
        raise ValidationError(f"Risk score must be an integer in [0, 100], got {score!r}.")


def coerce_enum(enum_cls: type[enum.Enum], value: Any, field: str) -> Any:
    """Return ``enum_cls(value)`` or raise ``ValidationError``."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [m.value for m in enum_cls]
        raise ValidationError(f"{field} must be one of {allowed}, got {value!r}.") from None


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------

def record_event(
    db_session: Session,
    *,
    session_id: str,
    event_type: CrisisEventType,
    triggered_by: str,
    trigger_method: TriggerMethod,
    severity: Optional[Severity] = None,
    previous_severity: Optional[Severity] = None,
    risk_score: Optional[int] = None,
    previous_risk_score: Optional[int] = None,
    message_ref: Optional[str] = None,
    risk_factors: Any = None,
    intervention_details: Optional[dict[str, Any]] = None,
    notes: Optional[str] = None,
) -> CrisisEventRow:
    """Append one crisis event within the caller's transaction.

    The row is flushed (so ``event_id`` is assigned) but not committed;
    it becomes durable only when the enclosing transaction commits.
    """
    coerce_enum(CrisisEventType, event_type, "event_type")
    coerce_enum(TriggerMethod, trigger_method, "trigger_method")
    validate_risk_score(risk_score)
    if not triggered_by:
        raise ValidationError("triggered_by is required for every crisis event.")

    row = CrisisEventRow(
        session_id=session_id,
        event_type=_value(event_type),
        severity=_value(severity),
        previous_severity=_value(previous_severity),
        risk_score=risk_score,
        previous_risk_score=previous_risk_score,
        triggered_by=triggered_by,
        trigger_method=_value(trigger_method),
        message_ref=message_ref,
        risk_factors=risk_factors,
        intervention_details=intervention_details,
        notes=notes,
        created_at=datetime.now(timezone.utc),
    )
    db_session.add(row)
    db_session.flush()
    return row


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------

class CrisisEventLog:
    """Read-only access to the crisis event audit trail."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def trail(self, session_id: str) -> list[CrisisEventRecord]:
        """Full audit trail for a session, newest first."""
        return self.query(session_id)

    def query(
        self,
        session_id: str,
        event_type: Optional[CrisisEventType] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        triggered_by: Optional[str] = None,
    ) -> list[CrisisEventRecord]:
        """Query events for one session, newest first.

        Args:
            session_id: Required.  Only this session's events are returned.
            event_type: Optional filter by event type.
            time_start: Optional inclusive start time.
            time_end: Optional inclusive end time.
            triggered_by: Optional filter by actor.
        """
        stmt = select(CrisisEventRow).where(CrisisEventRow.session_id == session_id)
        if event_type is not None:
            stmt = stmt.where(CrisisEventRow.event_type == _value(event_type))
        if time_start is not None:
            stmt = stmt.where(CrisisEventRow.created_at >= time_start)
        if time_end is not None:
            stmt = stmt.where(CrisisEventRow.created_at <= time_end)
        if triggered_by is not None:
            stmt = stmt.where(CrisisEventRow.triggered_by == triggered_by)
        stmt = stmt.order_by(CrisisEventRow.created_at.desc(), CrisisEventRow.event_id.desc())

        with self._db.transaction() as s:
            return [CrisisEventRecord.model_validate(r) for r in s.scalars(stmt)]

    def count(self, session_id: str, event_type: Optional[CrisisEventType] = None) -> int:
        return len(self.query(session_id, event_type=event_type))

    def export_for_review(self, session_id: str) -> dict[str, Any]:
        """Produce a JSON-serializable export bundle for compliance review.

        Events are listed oldest first so the bundle reads as a timeline.
        """
        events = list(reversed(self.trail(session_id)))
        entries = []
        for event in events:
            entry = event.model_dump(mode="json")
            entries.append(entry)

        counts: dict[str, int] = {}
        for event in events:
            counts[event.event_type.value] = counts.get(event.event_type.value, 0) + 1

        logger.info(
            "AUDIT_EXPORTED",
            extra={"session_id": session_id, "entry_count": len(entries)},
        )
        return {
            "export_metadata": {
                "session_id": session_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(entries),
                "event_counts": counts,
            },
            "entries": entries,
        }
