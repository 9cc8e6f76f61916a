"""Session store: keyed reads and conditional writes over the database.

Every mutating engine operation runs inside one ``transaction()``. Store
failures are mapped to infrastructure errors and never retried here.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from attendance_engine import db
from attendance_engine.models import (
    AttendanceRecord, AttendanceSession, Enrollment, SchoolClass, SessionState
)
from attendance_engine.utils.errors import InfrastructureError, StoreTimeoutError

# Driver messages that mean "gave up waiting" rather than "broken"
TIMEOUT_MARKERS = (
    'database is locked',
    'statement timeout',
    'lock timeout',
    'canceling statement',
)


class SessionStore:
    """Data access for sessions, records and rosters."""

    def __init__(self, session=None):
        self.session = session or db.session

    # Transactions

    @contextmanager
    def guard(self):
        """Map store failures raised in the block to engine errors."""
        try:
            yield self.session
        except IntegrityError:
            self.session.rollback()
            raise
        except OperationalError as exc:
            self.session.rollback()
            raise self._infrastructure_error(exc) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            current_app.logger.error(f"Session store failure: {exc}")
            raise InfrastructureError('Session store unavailable') from exc

    @contextmanager
    def transaction(self):
        """Run the block as one transaction; commit on success, roll back otherwise."""
        with self.guard():
            try:
                self._apply_timeout()
                yield self.session
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

    def rollback(self) -> None:
        self.session.rollback()

    def flush(self) -> None:
        self.session.flush()

    def _apply_timeout(self) -> None:
        bind = self.session.get_bind()
        if bind.dialect.name == 'postgresql':
            timeout_ms = int(current_app.config['STORE_TIMEOUT_SECONDS'] * 1000)
            self.session.execute(db.text(f"SET LOCAL statement_timeout = {timeout_ms}"))

    @staticmethod
    def _infrastructure_error(exc: OperationalError) -> InfrastructureError:
        message = str(exc.orig if exc.orig is not None else exc).lower()
        if any(marker in message for marker in TIMEOUT_MARKERS):
            current_app.logger.warning(f"Session store timed out: {message}")
            return StoreTimeoutError('Session store timed out')
        current_app.logger.error(f"Session store unavailable: {message}")
        return InfrastructureError('Session store unavailable')

    # Classes and rosters

    def get_class(self, class_id: int) -> Optional[SchoolClass]:
        return self.session.get(SchoolClass, class_id)

    def is_enrolled(self, class_id: int, student_id: int) -> bool:
        return Enrollment.query.filter_by(
            class_id=class_id, student_id=student_id
        ).first() is not None

    def enrolled_student_ids(self, class_id: int) -> List[int]:
        rows = Enrollment.query.filter_by(class_id=class_id).order_by(Enrollment.student_id)
        return [row.student_id for row in rows]

    # Sessions

    def get_session(self, session_id: str, lock: Optional[str] = None) -> Optional[AttendanceSession]:
        """Load a session, optionally row-locked.

        ``lock='share'`` lets concurrent marks proceed together while keeping
        end/refresh out; ``lock='update'`` is exclusive.
        """
        query = AttendanceSession.query.filter_by(id=session_id)
        if lock == 'share':
            query = query.with_for_update(read=True)
        elif lock == 'update':
            query = query.with_for_update()
        return query.populate_existing().first() if lock else query.first()

    def find_active_session(self, class_id: int) -> Optional[AttendanceSession]:
        return AttendanceSession.query.filter_by(
            class_id=class_id, state=SessionState.ACTIVE.value
        ).first()

    def list_active_sessions(self) -> List[AttendanceSession]:
        return AttendanceSession.query.filter_by(
            state=SessionState.ACTIVE.value
        ).order_by(AttendanceSession.started_at, AttendanceSession.id).all()

    def list_class_sessions(self, class_id: int, state: Optional[str] = None,
                            started_from: Optional[datetime] = None,
                            started_before: Optional[datetime] = None,
                            limit: Optional[int] = None,
                            newest_first: bool = False) -> List[AttendanceSession]:
        query = AttendanceSession.query.filter_by(class_id=class_id)
        if state:
            query = query.filter_by(state=state)
        if started_from is not None:
            query = query.filter(AttendanceSession.started_at >= started_from)
        if started_before is not None:
            query = query.filter(AttendanceSession.started_at < started_before)
        if newest_first:
            query = query.order_by(AttendanceSession.started_at.desc(), AttendanceSession.id)
        else:
            query = query.order_by(AttendanceSession.started_at, AttendanceSession.id)
        if limit:
            query = query.limit(limit)
        return query.all()

    def insert_session(self, attendance_session: AttendanceSession) -> AttendanceSession:
        """Add and flush; raises IntegrityError if the class already has an active session."""
        self.session.add(attendance_session)
        self.session.flush()
        return attendance_session

    def update_if_active(self, session_id: str, **values) -> bool:
        """Compare-and-swap: write ``values`` only while the session is active."""
        result = self.session.execute(
            db.update(AttendanceSession)
            .where(AttendanceSession.id == session_id)
            .where(AttendanceSession.state == SessionState.ACTIVE.value)
            .values(**values)
        )
        return result.rowcount == 1

    # Records

    def get_record(self, session_id: str, student_id: int) -> Optional[AttendanceRecord]:
        return AttendanceRecord.query.filter_by(
            session_id=session_id, student_id=student_id
        ).first()

    def list_records(self, session_id: str) -> List[AttendanceRecord]:
        return AttendanceRecord.query.filter_by(session_id=session_id).order_by(
            AttendanceRecord.marked_at, AttendanceRecord.student_id
        ).all()

    def list_records_for_sessions(self, session_ids: Iterable[str]) -> List[AttendanceRecord]:
        session_ids = list(session_ids)
        if not session_ids:
            return []
        return AttendanceRecord.query.filter(
            AttendanceRecord.session_id.in_(session_ids)
        ).order_by(AttendanceRecord.marked_at, AttendanceRecord.student_id).all()

    def recent_marks(self, session_id: str, since: datetime,
                     exclude_student_id: int) -> List[AttendanceRecord]:
        """Other students' marks in the session at or after ``since``."""
        return AttendanceRecord.query.filter(
            AttendanceRecord.session_id == session_id,
            AttendanceRecord.student_id != exclude_student_id,
            AttendanceRecord.marked_at >= since,
        ).order_by(AttendanceRecord.marked_at).all()

    def insert_record(self, record: AttendanceRecord) -> AttendanceRecord:
        """Add and flush; raises IntegrityError if the student already has a record."""
        self.session.add(record)
        self.session.flush()
        return record

    def insert_records(self, records: List[AttendanceRecord]) -> None:
        self.session.add_all(records)
        self.session.flush()


def get_store() -> SessionStore:
    return SessionStore()
