"""
Core data models for CrisisWatch.

Enumerations define the closed value domains used across the scoring,
escalation, and follow-up workflows.  The pydantic models are read-side
views of persisted records and the inbound message contract; persistence
itself lives in ``crisiswatch.storage``.

DISCLAIMER: Severity levels are workflow routing signals for trained human
reviewers.  They are not clinical assessments.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Severity(str, enum.Enum):
    """Qualitative crisis tier derived from a 0-100 risk score.

    ``NONE`` is only ever a stored session state (never scored); scoring
    always yields ``LOW``, ``MEDIUM``, or ``HIGH``.
    """

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MonitoringFrequency(str, enum.Enum):
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


class CrisisEventType(str, enum.Enum):
    """Audit event types written to the crisis event log."""

    FLAGGED = "flagged"
    UNFLAGGED = "unflagged"
    SEVERITY_CHANGED = "severity_changed"
    RISK_SCORE_UPDATED = "risk_score_updated"
    INTERVENTION_TRIGGERED = "intervention_triggered"
    HANDOFF_INITIATED = "handoff_initiated"
    HANDOFF_STATUS_CHANGED = "handoff_status_changed"
    CLINICAL_REVIEW_REQUESTED = "clinical_review_requested"
    CLINICAL_REVIEW_UPDATED = "clinical_review_updated"


class TriggerMethod(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"
    SYSTEM = "system"


class InterventionType(str, enum.Enum):
    LOW_RISK_RESOURCES = "low_risk_resources"
    MEDIUM_RISK_ALERT = "medium_risk_alert"
    HIGH_RISK_EMERGENCY = "high_risk_emergency"
    SUPERVISOR_REVIEW = "supervisor_review"
    CLINICAL_REVIEW = "clinical_review"
    HANDOFF_INITIATED = "handoff_initiated"
    MONITORING_INCREASED = "monitoring_increased"
    EXTERNAL_API_CALLED = "external_api_called"


class HandoffType(str, enum.Enum):
    CRISIS_HOTLINE = "crisis_hotline"
    CLINICAL_REVIEW = "clinical_review"
    EMERGENCY_SERVICES = "emergency_services"
    SUPERVISOR_ESCALATION = "supervisor_escalation"


class HandoffStatus(str, enum.Enum):
    """Handoff lifecycle.  ``COMPLETED`` and ``CANCELLED`` are terminal."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReviewType(str, enum.Enum):
    POST_CRISIS = "post_crisis"
    QUALITY_ASSURANCE = "quality_assurance"
    COMPLIANCE_AUDIT = "compliance_audit"
    THERAPEUTIC_OVERSIGHT = "therapeutic_oversight"


class ReviewStatus(str, enum.Enum):
    """Clinical review lifecycle.  ``COMPLETED`` is terminal."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ComplianceStatus(str, enum.Enum):
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non_compliant"
    NEEDS_FOLLOWUP = "needs_followup"


_MONITORING_BY_SEVERITY = {
    Severity.HIGH: MonitoringFrequency.CRITICAL,
    Severity.MEDIUM: MonitoringFrequency.HIGH,
    Severity.LOW: MonitoringFrequency.NORMAL,
    Severity.NONE: MonitoringFrequency.NORMAL,
}


def monitoring_for_severity(severity: Severity) -> MonitoringFrequency:
    """Return the monitoring cadence implied by a severity."""
    return _MONITORING_BY_SEVERITY[Severity(severity)]


# ---------------------------------------------------------------------------
# Inbound message contract
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """A single conversational message from the ingestion feed."""

    session_id: str = Field(..., min_length=1)
    role: MessageRole = Field(default=MessageRole.USER)
    text: str = Field(default="")
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC time the message was received.",
    )

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # Naive timestamps (e.g. read back from SQLite) are UTC.
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


# ---------------------------------------------------------------------------
# Persisted record views
# ---------------------------------------------------------------------------

class _RecordView(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class SessionCrisisState(_RecordView):
    """Crisis fields carried on the session entity."""

    session_id: str
    flagged: bool = False
    severity: Severity = Severity.NONE
    risk_score: int = Field(default=0, ge=0, le=100)
    flagged_at: Optional[datetime] = None
    flagged_by: Optional[str] = None
    unflagged_at: Optional[datetime] = None
    unflagged_by: Optional[str] = None
    monitoring_frequency: MonitoringFrequency = MonitoringFrequency.NORMAL


class CrisisEventRecord(_RecordView):
    event_id: int
    session_id: str
    event_type: CrisisEventType
    severity: Optional[Severity] = None
    previous_severity: Optional[Severity] = None
    risk_score: Optional[int] = None
    previous_risk_score: Optional[int] = None
    triggered_by: str
    trigger_method: TriggerMethod
    message_ref: Optional[str] = None
    risk_factors: Optional[Any] = None
    intervention_details: Optional[dict[str, Any]] = None
    notes: Optional[str] = None
    created_at: datetime


class RiskHistoryRecord(_RecordView):
    history_id: int
    session_id: str
    message_ref: Optional[str] = None
    risk_score: int
    severity: Severity
    score_factors: dict[str, Any] = Field(default_factory=dict)
    calculated_at: datetime


class InterventionRecord(_RecordView):
    action_id: int
    session_id: str
    action_type: InterventionType
    risk_score: Optional[int] = None
    details: dict[str, Any] = Field(default_factory=dict)
    performed_by: str = "system"
    performed_at: datetime
    outcome: Optional[str] = None
    notes: Optional[str] = None


class HandoffRecord(_RecordView):
    handoff_id: int
    session_id: str
    risk_score: int
    handoff_type: HandoffType
    status: HandoffStatus
    initiated_at: datetime
    initiated_by: str
    assigned_to: Optional[str] = None
    completed_at: Optional[datetime] = None
    outcome: Optional[str] = None
    external_reference: Optional[str] = None
    notes: Optional[str] = None


class ClinicalReviewRecord(_RecordView):
    review_id: int
    session_id: str
    risk_score: Optional[int] = None
    review_reason: str
    review_type: ReviewType
    status: ReviewStatus
    requested_at: datetime
    requested_by: str
    assigned_to: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    findings: Optional[str] = None
    recommendations: Optional[str] = None
    compliance_status: Optional[ComplianceStatus] = None


class ClinicalReviewUpdate(BaseModel):
    """Operator-supplied fields accompanying a clinical review transition."""

    assigned_to: Optional[str] = None
    findings: Optional[str] = None
    recommendations: Optional[str] = None
    compliance_status: Optional[ComplianceStatus] = None
