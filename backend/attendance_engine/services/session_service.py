# backend/attendance_engine/services/session_service.py
"""Session state machine: start, rotate QR, mark, manual mark, end.

Sessions go ``active`` -> ``ended`` and never back. Every operation re-reads
the session from the store, runs as one transaction and either commits all
of its writes or none of them. Rejections that must leave an audit trace
(duplicate attempts, flagged stale QR marks) commit that trace first and
raise afterwards.
"""
from datetime import timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from attendance_engine.models import (
    AttendanceRecord, AttendanceSession, AttendanceStatus, AuditAction,
    FraudFlagKind, SessionMethod, SessionState, StaleQrPolicy
)
from attendance_engine.services.audit_service import AuditService
from attendance_engine.services.authorization import Action, authorize
from attendance_engine.services.clock import get_clock
from attendance_engine.services.fraud_policy import (
    MarkEvidence, PriorMark, SessionPolicy, evaluate_mark, minutes_elapsed,
    timing_status
)
from attendance_engine.services.qr_service import get_token_generator
from attendance_engine.services.session_store import SessionStore
from attendance_engine.utils.errors import (
    CLASS_NOT_FOUND, DUPLICATE_ATTEMPT, FACE_VERIFICATION_REQUIRED, INVALID_METHOD,
    NOT_ENROLLED, SESSION_ALREADY_ACTIVE, SESSION_NOT_ACTIVE, SESSION_NOT_FOUND,
    SESSION_WINDOW_CLOSED, STALE_QR,
    AuthorizationError, NotFoundError, StateConflictError, ValidationError,
    rejection_error
)
from attendance_engine.utils.helpers import session_duration

METHODS = [m.value for m in SessionMethod]
STALE_QR_POLICIES = [p.value for p in StaleQrPolicy]


def _validate_minutes(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer", field=name)


def count_statuses(records) -> dict:
    counts = {status.value: 0 for status in AttendanceStatus}
    for record in records:
        counts[record.status] = counts.get(record.status, 0) + 1
    return counts


class SessionService:
    """Lifecycle operations on attendance sessions."""

    def __init__(self, store: SessionStore = None, clock=None, token_generator=None):
        self.store = store or SessionStore()
        self.clock = clock or get_clock()
        self.token_generator = token_generator or get_token_generator()

    @property
    def logger(self):
        return current_app.logger

    # Loading helpers

    def _load_session(self, session_id: str, lock: Optional[str] = None) -> AttendanceSession:
        attendance_session = self.store.get_session(session_id, lock=lock)
        if attendance_session is None:
            raise NotFoundError('Session not found', SESSION_NOT_FOUND, session_id=session_id)
        return attendance_session

    def _load_class(self, class_id: int):
        school_class = self.store.get_class(class_id)
        if school_class is None:
            raise NotFoundError('Class not found', CLASS_NOT_FOUND, class_id=class_id)
        return school_class

    @staticmethod
    def _require_active(attendance_session: AttendanceSession) -> None:
        if not attendance_session.is_active():
            raise StateConflictError('Session is not active', SESSION_NOT_ACTIVE,
                                     state=attendance_session.state)

    # Start

    def start(self, principal, class_id: int, method: str = SessionMethod.QR.value,
              late_after_minutes: int = None, auto_absent_minutes: int = None,
              face_required: bool = False, room_number: str = None,
              building_name: str = None, stale_qr_policy: str = None) -> AttendanceSession:
        """Open a session for a class; at most one may be active per class."""
        config = current_app.config

        if method not in METHODS:
            raise ValidationError(f"Method must be one of: {', '.join(METHODS)}", INVALID_METHOD)

        if late_after_minutes is None:
            late_after_minutes = config['DEFAULT_LATE_AFTER_MINUTES']
        if auto_absent_minutes is None:
            auto_absent_minutes = config['DEFAULT_AUTO_ABSENT_MINUTES']
        stale_qr_policy = stale_qr_policy or config['DEFAULT_STALE_QR_POLICY']

        _validate_minutes('late_after_minutes', late_after_minutes)
        if auto_absent_minutes is not None:
            _validate_minutes('auto_absent_minutes', auto_absent_minutes)
            if auto_absent_minutes <= late_after_minutes:
                raise ValidationError(
                    'auto_absent_minutes must be greater than late_after_minutes',
                    field='auto_absent_minutes'
                )
        if stale_qr_policy not in STALE_QR_POLICIES:
            raise ValidationError(
                f"stale_qr_policy must be one of: {', '.join(STALE_QR_POLICIES)}",
                field='stale_qr_policy'
            )

        with self.store.transaction():
            school_class = self._load_class(class_id)
            authorize(principal, Action.START_SESSION, school_class=school_class)

            existing = self.store.find_active_session(class_id)
            if existing is not None:
                raise StateConflictError('Class already has an active session',
                                         SESSION_ALREADY_ACTIVE,
                                         existing_session_id=existing.id)

            now = self.clock.now()
            attendance_session = AttendanceSession(
                class_id=school_class.id,
                teacher_id=school_class.teacher_id,
                started_by=principal.id,
                method=method,
                state=SessionState.ACTIVE.value,
                started_at=now,
                late_after_minutes=late_after_minutes,
                auto_absent_minutes=auto_absent_minutes,
                face_required=bool(face_required) or method == SessionMethod.FACE.value,
                stale_qr_policy=stale_qr_policy,
                room_number=room_number,
                building_name=building_name,
            )
            if method == SessionMethod.QR.value:
                attendance_session.current_qr_code = self.token_generator()
                attendance_session.qr_issued_at = now
                attendance_session.qr_refresh_seconds = config['QR_REFRESH_SECONDS']

            try:
                self.store.insert_session(attendance_session)
            except IntegrityError:
                # Lost the race to another start for the same class
                self.store.rollback()
                winner = self.store.find_active_session(class_id)
                raise StateConflictError('Class already has an active session',
                                         SESSION_ALREADY_ACTIVE,
                                         existing_session_id=winner.id if winner else None)

            AuditService.record(
                AuditAction.SESSION_STARTED, principal,
                target_type='session', target_id=attendance_session.id,
                class_id=class_id, method=method,
                late_after_minutes=late_after_minutes,
                auto_absent_minutes=auto_absent_minutes,
            )
            session_id = attendance_session.id

        self.logger.info(f"Session {session_id} started for class {class_id} "
                         f"by user {principal.id} ({method})")
        return self.store.get_session(session_id)

    # QR rotation

    def refresh_qr(self, principal, session_id: str) -> AttendanceSession:
        """Issue a new QR token; the previous one stops being accepted."""
        with self.store.transaction():
            attendance_session = self._load_session(session_id, lock='update')
            authorize(principal, Action.REFRESH_QR, school_class=attendance_session.school_class)

            self._require_active(attendance_session)
            if attendance_session.method != SessionMethod.QR.value:
                raise ValidationError('Session does not use QR codes', INVALID_METHOD,
                                      method=attendance_session.method)

            now = self.clock.now()
            swapped = self.store.update_if_active(
                session_id, current_qr_code=self.token_generator(), qr_issued_at=now
            )
            if not swapped:
                raise StateConflictError('Session is not active', SESSION_NOT_ACTIVE,
                                         state=SessionState.ENDED.value)

            AuditService.record(AuditAction.QR_REFRESHED, principal,
                                target_type='session', target_id=session_id)

        self.logger.info(f"QR code rotated for session {session_id}")
        return self.store.get_session(session_id)

    # Marking

    def mark_attendance(self, principal, session_id: str, evidence: MarkEvidence) -> AttendanceRecord:
        """Record a student's own attendance.

        Raises the rejection's typed error when the mark is refused.
        """
        config = current_app.config
        student_id = principal.id
        pending_error = None
        record_id = None

        with self.store.transaction():
            attendance_session = self._load_session(session_id, lock='share')
            authorize(principal, Action.MARK_ATTENDANCE)
            self._require_active(attendance_session)

            enrolled = self.store.is_enrolled(attendance_session.class_id, student_id)
            authorize(principal, Action.MARK_ATTENDANCE,
                      school_class=attendance_session.school_class,
                      student_id=student_id, enrolled=enrolled)

            now = self.clock.now()
            policy = SessionPolicy.from_session(attendance_session, config)
            own_record = self.store.get_record(session_id, student_id)
            others = self.store.recent_marks(
                session_id,
                since=now - timedelta(seconds=policy.velocity_window_seconds),
                exclude_student_id=student_id,
            )

            decision = evaluate_mark(
                policy=policy,
                started_at=attendance_session.started_at,
                current_qr_code=attendance_session.current_qr_code,
                now=now,
                student_id=student_id,
                own_record=own_record,
                other_marks=[PriorMark.from_record(r) for r in others],
                evidence=evidence,
            )

            if decision.rejection == DUPLICATE_ATTEMPT:
                pending_error = self._record_duplicate(principal, own_record)
            elif not decision.accepted and not decision.persist:
                self.logger.info(f"Mark rejected ({decision.rejection}) for student "
                                 f"{student_id} in session {session_id}")
                raise rejection_error(decision.rejection, _REJECTION_MESSAGES[decision.rejection],
                                      **decision.context)
            else:
                record = AttendanceRecord(
                    session_id=session_id,
                    class_id=attendance_session.class_id,
                    student_id=student_id,
                    method=evidence.method,
                    status=decision.status,
                    marked_at=now,
                    minutes_after_start=decision.minutes_after_start,
                    face_verified=bool(evidence.face_verified),
                    fraud_flags=list(decision.fraud_flags),
                    source_qr_code=evidence.qr_code,
                    device_id=evidence.device_id,
                    latitude=evidence.latitude,
                    longitude=evidence.longitude,
                )
                try:
                    self.store.insert_record(record)
                except IntegrityError:
                    # A concurrent mark for the same student won
                    self.store.rollback()
                    winner = self.store.get_record(session_id, student_id)
                    pending_error = self._record_duplicate(principal, winner)
                else:
                    record_id = record.id
                    if decision.accepted:
                        AuditService.record(AuditAction.ATTENDANCE_MARKED, principal,
                                            target_type='record', target_id=record.id,
                                            session_id=session_id, status=record.status,
                                            fraud_flags=list(decision.fraud_flags))
                    else:
                        AuditService.record(AuditAction.ATTENDANCE_REJECTED, principal,
                                            target_type='record', target_id=record.id,
                                            session_id=session_id, code=decision.rejection)
                        pending_error = rejection_error(
                            decision.rejection, _REJECTION_MESSAGES[decision.rejection],
                            record_id=record.id
                        )

        if pending_error is not None:
            self.logger.warning(f"Mark rejected ({pending_error.code}) for student "
                                f"{student_id} in session {session_id}")
            raise pending_error

        if decision.fraud_flags:
            self.logger.warning(f"Record {record_id} flagged {list(decision.fraud_flags)} "
                                f"in session {session_id}")
        else:
            self.logger.info(f"Student {student_id} marked {decision.status} "
                             f"in session {session_id}")
        return AttendanceRecord.get_by_id(record_id)

    def _record_duplicate(self, principal, original: AttendanceRecord):
        """Note the attempt on the original record and return the error to raise."""
        original.add_flag(FraudFlagKind.DUPLICATE_ATTEMPT)
        AuditService.record(AuditAction.ATTENDANCE_REJECTED, principal,
                            target_type='record', target_id=original.id,
                            session_id=original.session_id, code=DUPLICATE_ATTEMPT)
        return rejection_error(DUPLICATE_ATTEMPT, _REJECTION_MESSAGES[DUPLICATE_ATTEMPT],
                               record_id=original.id)

    # Manual marking and review

    def manual_mark(self, principal, session_id: str, student_id: int,
                    approved: bool = True, reason: str = None) -> AttendanceRecord:
        """Teacher marks a student, or resolves a flagged record."""
        with self.store.transaction():
            attendance_session = self._load_session(session_id, lock='share')
            authorize(principal, Action.MANUAL_MARK, school_class=attendance_session.school_class)
            self._require_active(attendance_session)

            if not self.store.is_enrolled(attendance_session.class_id, student_id):
                raise AuthorizationError('Student is not enrolled in this class', NOT_ENROLLED,
                                         student_id=student_id)

            now = self.clock.now()
            record = self.store.get_record(session_id, student_id)

            if record is None:
                record = AttendanceRecord(
                    session_id=session_id,
                    class_id=attendance_session.class_id,
                    student_id=student_id,
                    method=SessionMethod.MANUAL.value,
                    status=AttendanceStatus.PRESENT.value if approved else AttendanceStatus.ABSENT.value,
                    marked_at=now,
                    fraud_flags=[],
                    reviewed_by=principal.id,
                    reviewed_at=now,
                    review_reason=reason,
                )
                try:
                    self.store.insert_record(record)
                except IntegrityError:
                    self.store.rollback()
                    existing = self.store.get_record(session_id, student_id)
                    raise ValidationError('Attendance already recorded for this student',
                                          DUPLICATE_ATTEMPT,
                                          record_id=existing.id if existing else None)
                action = AuditAction.MANUAL_MARK

            elif record.status == AttendanceStatus.FLAGGED.value:
                if approved:
                    policy = SessionPolicy.from_session(attendance_session, current_app.config)
                    elapsed = minutes_elapsed(attendance_session.started_at, record.marked_at)
                    record.status = timing_status(policy, elapsed)
                else:
                    record.status = AttendanceStatus.ABSENT.value
                record.reviewed_by = principal.id
                record.reviewed_at = now
                record.review_reason = reason
                action = AuditAction.FLAGGED_RECORD_REVIEWED

            else:
                raise ValidationError('Attendance already recorded for this student',
                                      DUPLICATE_ATTEMPT, record_id=record.id)

            self.store.flush()
            AuditService.record(action, principal, target_type='record', target_id=record.id,
                                session_id=session_id, student_id=student_id,
                                approved=bool(approved), status=record.status, reason=reason)
            record_id = record.id

        self.logger.info(f"Manual mark by user {principal.id}: student {student_id} "
                         f"in session {session_id} ({'approved' if approved else 'rejected'})")
        return AttendanceRecord.get_by_id(record_id)

    # End

    def end(self, principal, session_id: str) -> dict:
        """Close the session and sweep every unmarked enrolled student to absent."""
        with self.store.transaction():
            attendance_session = self._load_session(session_id, lock='update')
            authorize(principal, Action.END_SESSION, school_class=attendance_session.school_class)
            self._require_active(attendance_session)

            now = self.clock.now()
            started_at = attendance_session.started_at
            if not self.store.update_if_active(session_id, state=SessionState.ENDED.value,
                                               ended_at=now):
                raise StateConflictError('Session is not active', SESSION_NOT_ACTIVE,
                                         state=SessionState.ENDED.value)

            enrolled = self.store.enrolled_student_ids(attendance_session.class_id)
            marked = {record.student_id for record in self.store.list_records(session_id)}
            absentees = [
                AttendanceRecord(
                    session_id=session_id,
                    class_id=attendance_session.class_id,
                    student_id=student_id,
                    method=attendance_session.method,
                    status=AttendanceStatus.ABSENT.value,
                    marked_at=now,
                    face_verified=False,
                    fraud_flags=[],
                )
                for student_id in enrolled if student_id not in marked
            ]
            if absentees:
                self.store.insert_records(absentees)
                AuditService.record(AuditAction.AUTO_ABSENT_SWEEP, principal,
                                    target_type='session', target_id=session_id,
                                    student_ids=[r.student_id for r in absentees])

            counts = count_statuses(self.store.list_records(session_id))
            summary = {
                'present': counts[AttendanceStatus.PRESENT.value],
                'late': counts[AttendanceStatus.LATE.value],
                'absent': counts[AttendanceStatus.ABSENT.value],
                'flagged': counts[AttendanceStatus.FLAGGED.value],
                'total_enrolled': len(enrolled),
                'auto_absent_created': len(absentees),
                'duration': session_duration(started_at, now),
            }
            AuditService.record(AuditAction.SESSION_ENDED, principal,
                                target_type='session', target_id=session_id, **summary)

        self.logger.info(f"Session {session_id} ended by user {principal.id}; "
                         f"{summary['auto_absent_created']} marked absent")
        return summary

    # Reads

    def get_session(self, principal, session_id: str):
        """Return ``(session, include_qr)``; students never see the live token."""
        with self.store.guard():
            attendance_session = self._load_session(session_id)
            enrolled = None
            if principal.is_student:
                enrolled = self.store.is_enrolled(attendance_session.class_id, principal.id)
            authorize(principal, Action.VIEW_SESSION,
                      school_class=attendance_session.school_class, enrolled=enrolled)
            return attendance_session, not principal.is_student

    def active_for_class(self, principal, class_id: int):
        """Return ``(session or None, include_qr)`` for the class."""
        with self.store.guard():
            school_class = self._load_class(class_id)
            enrolled = None
            if principal.is_student:
                enrolled = self.store.is_enrolled(class_id, principal.id)
            authorize(principal, Action.VIEW_SESSION, school_class=school_class, enrolled=enrolled)
            return self.store.find_active_session(class_id), not principal.is_student

    def list_class_sessions(self, principal, class_id: int, state: str = None,
                            limit: int = None) -> list:
        with self.store.guard():
            school_class = self._load_class(class_id)
            enrolled = None
            if principal.is_student:
                enrolled = self.store.is_enrolled(class_id, principal.id)
            authorize(principal, Action.VIEW_SESSION, school_class=school_class, enrolled=enrolled)
            return self.store.list_class_sessions(class_id, state=state, limit=limit,
                                                  newest_first=True)


_REJECTION_MESSAGES = {
    DUPLICATE_ATTEMPT: 'Attendance already recorded for this session',
    SESSION_WINDOW_CLOSED: 'The attendance window for this session has closed',
    INVALID_METHOD: 'This session does not accept that attendance method',
    STALE_QR: 'QR code is no longer valid',
    FACE_VERIFICATION_REQUIRED: 'Face verification is required for this session',
}
