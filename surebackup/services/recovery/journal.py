"""
Durable session journal.

Every session transition is mirrored into a SQL table so that a later run can
find and clean up VMs left behind by a run that was killed mid-flight.
"""
import logging
import threading
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select

from surebackup.models.base import create_journal_engine, create_session_factory
from surebackup.models.journal import SessionRecord
from surebackup.models.session import CLEANABLE_STATUSES, RecoverySession, SessionStatus, utcnow

logger = logging.getLogger(__name__)


class SessionJournal:
    """Writes recovery sessions to the journal database."""

    def __init__(self, url: str, echo: bool = False):
        self.engine = create_journal_engine(url, echo=echo)
        self.SessionLocal = create_session_factory(self.engine)
        self._lock = threading.Lock()

    def record(self, run_id: str, session: RecoverySession) -> None:
        """Insert or update the row for a session."""
        history = [[status.value, at.isoformat()] for status, at in session.history]

        with self._lock, self.SessionLocal() as db:
            row = db.execute(
                select(SessionRecord).where(
                    SessionRecord.run_id == run_id,
                    SessionRecord.recovery_name == session.recovery_name,
                )
            ).scalar_one_or_none()

            if row is None:
                row = SessionRecord(
                    run_id=run_id,
                    original_name=session.original_name,
                    recovery_name=session.recovery_name,
                    restore_method=session.restore_method,
                    started_at=session.started_at,
                )
                db.add(row)

            row.restore_point_id = session.restore_point_id
            row.tier = session.tier
            row.resource_id = session.resource_id
            row.status = session.status.value
            row.last_error = session.last_error
            row.history = history
            row.updated_at = utcnow()
            db.commit()

    def open_sessions(self, exclude_run_id: Optional[str] = None) -> List[SessionRecord]:
        """
        Sessions that may still own a provisioned VM.

        Args:
            exclude_run_id: Skip rows written by this run

        Returns:
            Journal rows in a cleanable state, oldest first
        """
        statuses = [status.value for status in CLEANABLE_STATUSES]
        query = select(SessionRecord).where(SessionRecord.status.in_(statuses))
        if exclude_run_id:
            query = query.where(SessionRecord.run_id != exclude_run_id)
        query = query.order_by(SessionRecord.started_at)

        with self._lock, self.SessionLocal() as db:
            return list(db.execute(query).scalars().all())

    @staticmethod
    def to_session(record: SessionRecord) -> RecoverySession:
        """Rebuild a session from its journal row."""
        history = [
            (SessionStatus(status), datetime.fromisoformat(at))
            for status, at in (record.history or [])
        ]
        return RecoverySession(
            original_name=record.original_name,
            recovery_name=record.recovery_name,
            restore_method=record.restore_method,
            restore_point_id=record.restore_point_id,
            tier=record.tier,
            resource_id=record.resource_id,
            status=SessionStatus(record.status),
            started_at=record.started_at,
            last_error=record.last_error,
            history=history,
        )

    def close(self) -> None:
        self.engine.dispose()
