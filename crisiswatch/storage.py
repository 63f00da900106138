"""
Transactional Relational Store for CrisisWatch.

Six tables keyed by an opaque session identifier:

* ``crisis_sessions``       -- the session entity and its mutable crisis fields.
* ``crisis_events``         -- append-only audit trail.
* ``risk_score_history``    -- one row per scored message with score > 0.
* ``intervention_actions``  -- append-only; ``outcome``/``notes`` set later.
* ``human_handoffs``        -- status/outcome fields mutable.
* ``clinical_reviews``      -- status/findings fields mutable.

``Database.transaction()`` yields a SQLAlchemy session that commits on
success and rolls back on *any* exception, so a state row and its audit
row are always written together or not at all.  SQLAlchemy failures are
re-raised as ``PersistenceError``; domain errors propagate unchanged.

Per-session serialization of the dispatcher's read-decide-write is
provided by ``SessionLockRegistry`` (an in-process mutex per session id)
combined with ``SELECT ... FOR UPDATE`` on the session row for backends
that support row locks.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from crisiswatch.errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)

Base = declarative_base()

# SQLite only autoincrements INTEGER primary keys.
_Id = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

class CrisisSessionRow(Base):
    __tablename__ = "crisis_sessions"

    session_id = Column(String(255), primary_key=True)
    flagged = Column(Boolean, nullable=False, default=False, index=True)
    severity = Column(String(10), nullable=False, default="none")
    risk_score = Column(Integer, nullable=False, default=0)
    flagged_at = Column(DateTime(timezone=True), nullable=True)
    flagged_by = Column(String(255), nullable=True)
    unflagged_at = Column(DateTime(timezone=True), nullable=True)
    unflagged_by = Column(String(255), nullable=True)
    monitoring_frequency = Column(String(10), nullable=False, default="normal")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class CrisisEventRow(Base):
    __tablename__ = "crisis_events"

    event_id = Column(_Id, primary_key=True, autoincrement=True)
    session_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(30), nullable=False, index=True)
    severity = Column(String(10), nullable=True)
    previous_severity = Column(String(10), nullable=True)
    risk_score = Column(Integer, nullable=True)
    previous_risk_score = Column(Integer, nullable=True)
    triggered_by = Column(String(255), nullable=False)
    trigger_method = Column(String(20), nullable=False)
    message_ref = Column(String(255), nullable=True)
    risk_factors = Column(JSON, nullable=True)
    intervention_details = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class RiskScoreHistoryRow(Base):
    __tablename__ = "risk_score_history"

    history_id = Column(_Id, primary_key=True, autoincrement=True)
    session_id = Column(String(255), nullable=False, index=True)
    message_ref = Column(String(255), nullable=True)
    risk_score = Column(Integer, nullable=False)
    severity = Column(String(10), nullable=False)
    score_factors = Column(JSON, nullable=False, default=dict)
    calculated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class InterventionActionRow(Base):
    __tablename__ = "intervention_actions"

    action_id = Column(_Id, primary_key=True, autoincrement=True)
    session_id = Column(String(255), nullable=False, index=True)
    action_type = Column(String(50), nullable=False)
    risk_score = Column(Integer, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    performed_by = Column(String(255), nullable=False, default="system")
    performed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    outcome = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)


class HumanHandoffRow(Base):
    __tablename__ = "human_handoffs"

    handoff_id = Column(_Id, primary_key=True, autoincrement=True)
    session_id = Column(String(255), nullable=False, index=True)
    risk_score = Column(Integer, nullable=False)
    handoff_type = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    initiated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    initiated_by = Column(String(255), nullable=False, default="system")
    assigned_to = Column(String(255), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    outcome = Column(Text, nullable=True)
    external_reference = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)


class ClinicalReviewRow(Base):
    __tablename__ = "clinical_reviews"

    review_id = Column(_Id, primary_key=True, autoincrement=True)
    session_id = Column(String(255), nullable=False, index=True)
    risk_score = Column(Integer, nullable=True)
    review_reason = Column(String(255), nullable=False)
    review_type = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    requested_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    requested_by = Column(String(255), nullable=False, default="system")
    assigned_to = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    findings = Column(Text, nullable=True)
    recommendations = Column(Text, nullable=True)
    compliance_status = Column(String(20), nullable=True)


# ---------------------------------------------------------------------------
# Per-session locks
# ---------------------------------------------------------------------------

class SessionLockRegistry:
    """In-process mutex per session id.

    Locks are re-entrant so that a dispatcher holding a session's lock may
    call the public flag/update operations, which take the same lock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, session_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[session_id] = lock
            return lock

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        with self.lock_for(session_id):
            yield


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

class Database:
    """Engine, session factory, and transaction boundary."""

    def __init__(self, url: str, echo: bool = False) -> None:
        kwargs: dict = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
                kwargs["poolclass"] = StaticPool
        self.url = url
        self.engine = create_engine(url, echo=echo, **kwargs)
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.locks = SessionLockRegistry()

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("DATABASE_SCHEMA_READY", extra={"url": self.engine.url.render_as_string()})

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session inside one transaction; commit or roll back in full."""
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("TRANSACTION_ROLLED_BACK", extra={"error": str(exc)})
            raise PersistenceError(f"Storage operation failed: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def load_session_for_update(db_session: Session, session_id: str) -> CrisisSessionRow:
    """Fetch a session row under a row lock.

    Raises:
        NotFoundError: If the session has not been registered.
    """
    row = db_session.execute(
        select(CrisisSessionRow)
        .where(CrisisSessionRow.session_id == session_id)
        .with_for_update()
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError(f"Unknown session '{session_id}'.")
    return row


def find_session(db_session: Session, session_id: str) -> Optional[CrisisSessionRow]:
    return db_session.get(CrisisSessionRow, session_id)
