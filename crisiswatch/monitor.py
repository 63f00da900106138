"""
Crisis Monitor -- Ingestion Entry Point.

Wires the pipeline for one inbound message:

    message -> signal layers -> aggregate (+ history write)
            -> dispatcher (hysteresis, atomic state + event)
            -> intervention executor -> handoff / clinical review

Scoring runs synchronously, once per user message.  Assistant messages are
ignored.  Messages for different sessions are independent; within one
session the dispatcher serializes the read-decide-write.

Conversation history is read through a ``ConversationHistory`` accessor
owned by the deploying application.  If the read fails the message is
still scored, with an empty context window (the failure is logged).
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from typing import Optional, Protocol, Sequence

from crisiswatch.audit import CrisisEventLog
from crisiswatch.clinical_review import ClinicalReviewWorkflow
from crisiswatch.config import (
    DEFAULT_LEXICON,
    DEFAULT_POLICY,
    CrisisWatchSettings,
    Lexicon,
    ScoringPolicy,
)
from crisiswatch.escalation import EscalationDispatcher
from crisiswatch.handoff import HandoffWorkflow
from crisiswatch.intervention import InterventionExecutor, InterventionOutcome
from crisiswatch.models import CrisisEventRecord, Message, MessageRole
from crisiswatch.notifications import Notifier, NullNotifier
from crisiswatch.risk import RiskAnalyzer, RiskAssessment
from crisiswatch.storage import Database

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Conversation history accessor
# ---------------------------------------------------------------------------

class ConversationHistory(Protocol):
    def recent_messages(self, session_id: str, limit: int) -> Sequence[Message]:
        """Up to ``limit`` most recent messages for a session, oldest first."""
        ...


class InMemoryConversationHistory:
    """Bounded per-session message buffer."""

    def __init__(self, max_messages: int = 50) -> None:
        self._max = max_messages
        self._lock = threading.Lock()
        self._messages: dict[str, deque[Message]] = defaultdict(
            lambda: deque(maxlen=self._max)
        )

    def append(self, message: Message) -> None:
        with self._lock:
            self._messages[message.session_id].append(message)

    def recent_messages(self, session_id: str, limit: int) -> list[Message]:
        with self._lock:
            buffered = list(self._messages.get(session_id, ()))
        return buffered[-limit:] if limit > 0 else []


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class MonitorResult:
    """Outcome of processing one message."""

    def __init__(
        self,
        assessment: Optional[RiskAssessment] = None,
        event: Optional[CrisisEventRecord] = None,
        intervention: Optional[InterventionOutcome] = None,
    ) -> None:
        self.assessment = assessment
        self.event = event
        self.intervention = intervention

    @property
    def escalated(self) -> bool:
        return self.event is not None

    def __repr__(self) -> str:
        score = self.assessment.risk_score if self.assessment else None
        return f"MonitorResult(risk_score={score}, escalated={self.escalated})"


class CrisisMonitor:
    """Process inbound messages through scoring, escalation and intervention."""

    def __init__(
        self,
        db: Database,
        lexicon: Lexicon = DEFAULT_LEXICON,
        policy: ScoringPolicy = DEFAULT_POLICY,
        notifier: Optional[Notifier] = None,
        history: Optional[ConversationHistory] = None,
    ) -> None:
        self.db = db
        self.policy = policy
        self.notifier = notifier or NullNotifier()
        self.history = history if history is not None else InMemoryConversationHistory()

        self.analyzer = RiskAnalyzer(db, lexicon, policy)
        self.dispatcher = EscalationDispatcher(db, policy)
        self.reviews = ClinicalReviewWorkflow(db, self.notifier)
        self.handoffs = HandoffWorkflow(db, self.reviews, self.notifier, policy)
        self.interventions = InterventionExecutor(db, self.handoffs, self.notifier)
        self.events = CrisisEventLog(db)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[CrisisWatchSettings] = None,
        notifier: Optional[Notifier] = None,
        history: Optional[ConversationHistory] = None,
    ) -> "CrisisMonitor":
        """Build a monitor from environment settings and create the schema."""
        settings = settings or CrisisWatchSettings()
        db = Database(settings.database_url, echo=settings.echo_sql)
        db.create_all()
        return cls(
            db,
            lexicon=settings.load_lexicon(),
            policy=settings.load_policy(),
            notifier=notifier,
            history=history,
        )

    def _load_history(self, message: Message) -> list[Message]:
        try:
            history = list(
                self.history.recent_messages(message.session_id, self.policy.history_window)
            )
        except Exception as exc:
            logger.warning(
                "HISTORY_READ_FAILED",
                extra={"session_id": message.session_id, "error": str(exc)},
            )
            history = []
        if not any(m.message_id == message.message_id for m in history):
            history.append(message)
        return history[-self.policy.history_window:]

    def process_message(self, message: Message) -> MonitorResult:
        """Score a message and escalate its session if warranted.

        Returns:
            A ``MonitorResult``; empty for assistant messages.

        Raises:
            PersistenceError: If the escalation transaction fails.
        """
        if message.role != MessageRole.USER:
            return MonitorResult()

        self.dispatcher.register_session(message.session_id)
        history = self._load_history(message)
        assessment = self.analyzer.analyze_message_risk(message, history)

        event = self.dispatcher.dispatch(assessment)
        if event is None:
            return MonitorResult(assessment)

        intervention = self.interventions.execute(
            message.session_id, assessment.severity, assessment.risk_score
        )
        return MonitorResult(assessment, event, intervention)

    # -- read surfaces --

    def session_crisis_events(self, session_id: str) -> list[CrisisEventRecord]:
        return self.events.trail(session_id)
