"""
Synthetic Scenario: Late-Night Conversation Escalation Walkthrough
==================================================================

This script demonstrates the full CrisisWatch pipeline on an entirely
synthetic conversation.  No real user data is used.

The scenario simulates a support chat in which a user's messages move from
everyday stress to an acute crisis statement over a few minutes.

Steps demonstrated:
  1. Load the scoring policy from YAML
  2. Build a monitor with an in-memory database and recording notifier
  3. Score a sequence of messages (context and trajectory build up)
  4. Escalate to high severity: intervention, handoff, clinical review
  5. Walk a handoff and a clinical review through their lifecycles
  6. Unflag the session after human follow-up
  7. Generate a session crisis report and export the audit trail

DISCLAIMER: This is a synthetic demonstration.  Risk scores are routing
heuristics for trained humans, not clinical assessments.

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from crisiswatch.config import DEFAULT_POLICY, load_policy_from_yaml
from crisiswatch.crisis_report import generate_crisis_report
from crisiswatch.models import (
    ComplianceStatus,
    HandoffStatus,
    Message,
    ReviewStatus,
)
from crisiswatch.monitor import CrisisMonitor, InMemoryConversationHistory
from crisiswatch.notifications import RecordingNotifier
from crisiswatch.storage import Database


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s %(message)s")

    _banner("CrisisWatch Synthetic Scenario: Late-Night Conversation")
    print("DISCLAIMER: All data in this demo is entirely synthetic.")
    print("Risk scores are routing signals, not diagnoses.\n")

    # ------------------------------------------------------------------
    # Step 1: Load scoring policy
    # ------------------------------------------------------------------
    _banner("Step 1: Load Scoring Policy")

    sample_yaml = Path(__file__).parent / "scoring_policy.yaml"
    if sample_yaml.exists():
        policy = load_policy_from_yaml(sample_yaml)
        print(f"Loaded policy from {sample_yaml.name}")
    else:
        policy = DEFAULT_POLICY
        print("Using built-in default policy")
    print(f"  severity thresholds: medium>={policy.medium_min_score}, high>={policy.high_min_score}")
    print(f"  hysteresis delta: {policy.hysteresis_delta}")

    # ------------------------------------------------------------------
    # Step 2: Build the monitor
    # ------------------------------------------------------------------
    _banner("Step 2: Build Monitor")

    db = Database("sqlite:///:memory:")
    db.create_all()
    notifier = RecordingNotifier()
    history = InMemoryConversationHistory()
    monitor = CrisisMonitor(db, policy=policy, notifier=notifier, history=history)
    print("Monitor ready (in-memory SQLite, recording notifier).")

    # ------------------------------------------------------------------
    # Step 3: Score the conversation
    # ------------------------------------------------------------------
    _banner("Step 3: Process Synthetic Conversation")

    session_id = "synthetic-session-001"
    start = datetime.now(timezone.utc)
    script = [
        "Work has me really stressed this week",
        "I can't sleep and I'm anxious all the time",
        "Honestly I feel hopeless, nothing helps",
        "I want to kill myself tonight",
    ]
    for i, text in enumerate(script):
        message = Message(
            session_id=session_id,
            text=text,
            timestamp=start + timedelta(minutes=2 * i),
        )
        history.append(message)
        result = monitor.process_message(message)
        a = result.assessment
        print(f"[{i + 1}] score={a.risk_score:3d} severity={a.severity.value:<6} "
              f"escalated={result.escalated}")
        print(f"    keyword={a.breakdown.keyword_score} sentiment={a.breakdown.sentiment_score} "
              f"context={a.breakdown.context_score} trajectory={a.breakdown.trajectory_score} "
              f"trend={a.breakdown.trend}")

    state = monitor.dispatcher.get_session_state(session_id)
    print(f"\nSession state: flagged={state.flagged} severity={state.severity.value} "
          f"score={state.risk_score} monitoring={state.monitoring_frequency.value}")

    # ------------------------------------------------------------------
    # Step 4: What the escalation produced
    # ------------------------------------------------------------------
    _banner("Step 4: Interventions, Handoffs, Reviews")

    for action in monitor.interventions.session_interventions(session_id):
        print(f"Intervention: {action.action_type.value} (score {action.risk_score})")
    for handoff in monitor.handoffs.pending_handoffs():
        print(f"Pending handoff #{handoff.handoff_id}: {handoff.handoff_type.value}")
    for review in monitor.reviews.pending_clinical_reviews():
        print(f"Pending review #{review.review_id}: {review.review_type.value} -- {review.review_reason}")
    print("\nNotifications sent:")
    for sent in notifier.sent:
        print(f"  {sent.channel:<32} {sent.event}")

    # ------------------------------------------------------------------
    # Step 5: Human follow-up
    # ------------------------------------------------------------------
    _banner("Step 5: Handoff and Clinical Review Lifecycle")

    handoff = monitor.handoffs.pending_handoffs()[0]
    monitor.handoffs.update_handoff_status(
        handoff.handoff_id, HandoffStatus.IN_PROGRESS,
        assigned_to="counselor_synthetic_01", expected_status=HandoffStatus.PENDING,
    )
    done = monitor.handoffs.update_handoff_status(
        handoff.handoff_id, HandoffStatus.COMPLETED,
        outcome="(Synthetic) Warm transfer to 988 completed.",
        external_reference="SYN-988-0001",
        updated_by="counselor_synthetic_01",
    )
    print(f"Handoff #{done.handoff_id}: {done.status.value} at {done.completed_at}")

    review = monitor.reviews.pending_clinical_reviews()[0]
    monitor.reviews.update_clinical_review(
        review.review_id, ReviewStatus.IN_PROGRESS,
        {"assigned_to": "dr_synthetic_001"}, updated_by="dr_synthetic_001",
    )
    completed = monitor.reviews.update_clinical_review(
        review.review_id, ReviewStatus.COMPLETED,
        {
            "findings": "(Synthetic) Escalation was timely; resources appropriate.",
            "recommendations": "(Synthetic) No changes to protocol.",
            "compliance_status": ComplianceStatus.COMPLIANT,
        },
        updated_by="dr_synthetic_001",
    )
    print(f"Review #{completed.review_id}: {completed.status.value}, "
          f"compliance={completed.compliance_status.value}")

    # ------------------------------------------------------------------
    # Step 6: Unflag
    # ------------------------------------------------------------------
    _banner("Step 6: Unflag Session")

    monitor.dispatcher.unflag_session(
        session_id, "dr_synthetic_001", notes="(Synthetic) Safety plan in place."
    )
    state = monitor.dispatcher.get_session_state(session_id)
    print(f"flagged={state.flagged} monitoring={state.monitoring_frequency.value}")

    # ------------------------------------------------------------------
    # Step 7: Report and audit export
    # ------------------------------------------------------------------
    _banner("Step 7: Session Crisis Report")

    report = generate_crisis_report(monitor, session_id)
    print(json.dumps(report.to_dict(), indent=2, default=str))

    _banner("Step 8: Audit Trail Export (Compliance Review)")

    export = monitor.events.export_for_review(session_id)
    print(json.dumps(export["export_metadata"], indent=2))

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------
    _banner("Scenario Complete")
    print("This demo exercised:")
    print("  - Layered risk scoring with conversation context and trajectory")
    print("  - Hysteresis-gated escalation with one audit event per transition")
    print("  - Graduated intervention, human handoff, and clinical review")
    print("  - Optimistic status transitions for operator workflows")
    print("  - Session crisis report and audit export")
    print()
    print("All data was synthetic.")

    db.dispose()


if __name__ == "__main__":
    main()
