# backend/attendance_engine/services/report_service.py
"""Session statistics, class reports and super-admin views.

The ``compute_*`` functions are pure reductions over stored rows: the same
rows always give the same output. They never read the clock.
"""
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

import pandas as pd
from flask import current_app
from sqlalchemy import func

from attendance_engine import db
from attendance_engine.models import (
    AttendanceRecord, AttendanceSession, AttendanceStatus, SchoolClass,
    SessionMethod, SessionState, User, UserRole
)
from attendance_engine.services.audit_service import AuditService
from attendance_engine.services.authorization import Action, authorize
from attendance_engine.services.clock import get_clock
from attendance_engine.services.session_service import count_statuses
from attendance_engine.services.session_store import SessionStore
from attendance_engine.utils.errors import (
    CLASS_NOT_FOUND, SESSION_NOT_FOUND, NotFoundError
)
from attendance_engine.utils.helpers import isoformat, session_duration

PRESENT = AttendanceStatus.PRESENT.value
LATE = AttendanceStatus.LATE.value
ABSENT = AttendanceStatus.ABSENT.value
FLAGGED = AttendanceStatus.FLAGGED.value

EXPORT_COLUMNS = [
    'student_id', 'name', 'present', 'late', 'absent', 'flagged',
    'total', 'percentage', 'at_risk'
]


def _percentage(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 2)


def compute_session_stats(attendance_session, records: List, enrolled_ids: Iterable[int]) -> Dict:
    """Counts, rate and fraud alerts for one session."""
    enrolled_ids = set(enrolled_ids)
    counts = count_statuses(records)
    marked = {record.student_id for record in records}
    is_active = attendance_session.state == SessionState.ACTIVE.value

    duration = None
    if attendance_session.ended_at is not None:
        duration = session_duration(attendance_session.started_at, attendance_session.ended_at)

    stats = {
        'present': counts[PRESENT],
        'late': counts[LATE],
        'absent': counts[ABSENT],
        'flagged': counts[FLAGGED],
        'total_records': len(records),
        'total_enrolled': len(enrolled_ids),
        'not_yet_marked': len(enrolled_ids - marked),
        'attendance_rate': _percentage(counts[PRESENT] + counts[LATE], len(enrolled_ids)),
        'is_partial': is_active,
        'state': attendance_session.state,
        'duration': duration,
    }

    alerts = sorted(
        (record for record in records if record.fraud_flags),
        key=lambda record: (record.marked_at, record.student_id)
    )
    fraud_alerts = [
        {
            'record_id': record.id,
            'student_id': record.student_id,
            'status': record.status,
            'fraud_flags': list(record.fraud_flags),
            'marked_at': isoformat(record.marked_at),
            'reviewed': record.reviewed_at is not None,
        }
        for record in alerts
    ]

    return {'stats': stats, 'fraud_alerts': fraud_alerts}


def compute_session_attendance(attendance_session, records: List, enrolled_ids: Iterable[int],
                               names: Dict[int, str]) -> Dict:
    """Records grouped by status, plus enrolled students with no record yet."""
    groups = {status.value: [] for status in AttendanceStatus}
    for record in sorted(records, key=lambda r: (r.marked_at, r.student_id)):
        groups.setdefault(record.status, []).append({
            'record_id': record.id,
            'student_id': record.student_id,
            'name': names.get(record.student_id),
            'method': record.method,
            'marked_at': isoformat(record.marked_at),
            'minutes_after_start': record.minutes_after_start,
            'fraud_flags': list(record.fraud_flags or []),
        })

    marked = {record.student_id for record in records}
    not_yet_marked = [
        {'student_id': student_id, 'name': names.get(student_id)}
        for student_id in sorted(set(enrolled_ids) - marked)
    ]

    return {
        'session_id': attendance_session.id,
        'class_id': attendance_session.class_id,
        'state': attendance_session.state,
        'started_at': isoformat(attendance_session.started_at),
        'ended_at': isoformat(attendance_session.ended_at),
        'attendance': groups,
        'not_yet_marked': not_yet_marked,
        'counts': {status: len(rows) for status, rows in groups.items()},
    }


def compute_student_rows(records: List, student_ids: Iterable[int],
                         names: Dict[int, str], threshold: float) -> List[Dict]:
    """Per-student aggregates across a set of sessions, ordered by student id."""
    rows = {}
    for student_id in student_ids:
        rows[student_id] = {PRESENT: 0, LATE: 0, ABSENT: 0, FLAGGED: 0}
    for record in records:
        rows.setdefault(record.student_id, {PRESENT: 0, LATE: 0, ABSENT: 0, FLAGGED: 0})
        rows[record.student_id][record.status] += 1

    result = []
    for student_id in sorted(rows):
        counts = rows[student_id]
        total = sum(counts.values())
        percentage = _percentage(counts[PRESENT] + counts[LATE], total)
        result.append({
            'student_id': student_id,
            'name': names.get(student_id),
            'present': counts[PRESENT],
            'late': counts[LATE],
            'absent': counts[ABSENT],
            'flagged': counts[FLAGGED],
            'total': total,
            'percentage': percentage,
            'at_risk': total > 0 and percentage < threshold,
        })
    return result


def compute_class_report(sessions: List, records: List, enrolled_ids: List[int],
                         names: Dict[int, str], threshold: float) -> Dict:
    by_session = {}
    for record in records:
        by_session.setdefault(record.session_id, []).append(record)

    session_rows = []
    for attendance_session in sessions:
        session_stats = compute_session_stats(
            attendance_session, by_session.get(attendance_session.id, []), enrolled_ids
        )
        session_rows.append({
            'session_id': attendance_session.id,
            'method': attendance_session.method,
            'state': attendance_session.state,
            'started_at': isoformat(attendance_session.started_at),
            'ended_at': isoformat(attendance_session.ended_at),
            'stats': session_stats['stats'],
        })

    students = compute_student_rows(records, enrolled_ids, names, threshold)
    rates = [row['stats']['attendance_rate'] for row in session_rows]
    active_ids = [s.id for s in sessions if s.state == SessionState.ACTIVE.value]

    report = {
        'sessions': session_rows,
        'students': students,
        'summary': {
            'total_sessions': len(sessions),
            'avg_attendance': round(sum(rates) / len(rates), 2) if rates else 0.0,
            'at_risk_count': sum(1 for row in students if row['at_risk']),
        },
        'partial': bool(active_ids),
    }
    if active_ids:
        report['active_session_ids'] = active_ids
    return report


def _user_names(user_ids: Iterable[int]) -> Dict[int, str]:
    user_ids = list(set(user_ids))
    if not user_ids:
        return {}
    return {user.id: user.name for user in User.query.filter(User.id.in_(user_ids))}


class ReportService:
    """Read-side queries, each gated like the operations they describe."""

    def __init__(self, store: SessionStore = None, clock=None):
        self.store = store or SessionStore()
        self.clock = clock or get_clock()

    def _load_class(self, class_id: int):
        school_class = self.store.get_class(class_id)
        if school_class is None:
            raise NotFoundError('Class not found', CLASS_NOT_FOUND, class_id=class_id)
        return school_class

    def session_stats(self, principal, session_id: str) -> Dict:
        with self.store.guard():
            attendance_session = self.store.get_session(session_id)
            if attendance_session is None:
                raise NotFoundError('Session not found', SESSION_NOT_FOUND, session_id=session_id)
            authorize(principal, Action.VIEW_SESSION_STATS,
                      school_class=attendance_session.school_class)

            records = self.store.list_records(session_id)
            enrolled = self.store.enrolled_student_ids(attendance_session.class_id)
            return compute_session_stats(attendance_session, records, enrolled)

    def session_attendance(self, principal, session_id: str) -> Dict:
        """Who is present, late, absent or flagged in a session.

        Enrolled students get the same shape restricted to their own record.
        """
        with self.store.guard():
            attendance_session = self.store.get_session(session_id)
            if attendance_session is None:
                raise NotFoundError('Session not found', SESSION_NOT_FOUND, session_id=session_id)
            enrolled = None
            if principal.is_student:
                enrolled = self.store.is_enrolled(attendance_session.class_id, principal.id)
            authorize(principal, Action.VIEW_SESSION,
                      school_class=attendance_session.school_class, enrolled=enrolled)

            records = self.store.list_records(session_id)
            enrolled_ids = self.store.enrolled_student_ids(attendance_session.class_id)
            if principal.is_student:
                records = [r for r in records if r.student_id == principal.id]
                enrolled_ids = [principal.id]

            names = _user_names(enrolled_ids + [r.student_id for r in records])
            return compute_session_attendance(attendance_session, records, enrolled_ids, names)

    def class_report(self, principal, class_id: int, from_date: Optional[date] = None,
                     to_date: Optional[date] = None) -> Dict:
        with self.store.guard():
            school_class = self._load_class(class_id)
            authorize(principal, Action.VIEW_CLASS_REPORT, school_class=school_class)

            started_from = datetime.combine(from_date, datetime.min.time()) if from_date else None
            started_before = (datetime.combine(to_date, datetime.min.time()) + timedelta(days=1)
                              if to_date else None)

            sessions = self.store.list_class_sessions(
                class_id, started_from=started_from, started_before=started_before
            )
            records = self.store.list_records_for_sessions(s.id for s in sessions)
            enrolled = self.store.enrolled_student_ids(class_id)
            names = _user_names(enrolled + [r.student_id for r in records])

            report = compute_class_report(
                sessions, records, enrolled, names,
                current_app.config['LOW_ATTENDANCE_THRESHOLD']
            )
            report['class'] = {
                'id': school_class.id,
                'subject_name': school_class.subject_name,
                'subject_code': school_class.subject_code,
                'teacher_id': school_class.teacher_id,
            }
            report['from_date'] = from_date.isoformat() if from_date else None
            report['to_date'] = to_date.isoformat() if to_date else None
            return report

    def export_class_report(self, principal, class_id: int, from_date: Optional[date] = None,
                            to_date: Optional[date] = None) -> str:
        """The class report's student rows as CSV."""
        report = self.class_report(principal, class_id, from_date, to_date)
        df = pd.DataFrame(report['students'], columns=EXPORT_COLUMNS)
        return df.to_csv(index=False)

    def student_history(self, principal, student_id: int, class_id: Optional[int] = None) -> Dict:
        """A student's records with totals; teachers only see classes they own."""
        with self.store.guard():
            school_class = self._load_class(class_id) if class_id is not None else None
            authorize(principal, Action.READ_STUDENT_RECORDS,
                      school_class=school_class, student_id=student_id)

            query = AttendanceRecord.query.filter_by(student_id=student_id)
            if class_id is not None:
                query = query.filter_by(class_id=class_id)
            elif principal.is_teacher:
                owned = db.select(SchoolClass.id).where(SchoolClass.teacher_id == principal.id)
                query = query.filter(AttendanceRecord.class_id.in_(owned))

            records = query.order_by(AttendanceRecord.marked_at.desc(),
                                     AttendanceRecord.id.desc()).all()

            counts = count_statuses(records)
            return {
                'student_id': student_id,
                'class_id': class_id,
                'records': [record.to_dict() for record in records],
                'totals': {
                    'present': counts[PRESENT],
                    'late': counts[LATE],
                    'absent': counts[ABSENT],
                    'flagged': counts[FLAGGED],
                    'total': len(records),
                    'percentage': _percentage(counts[PRESENT] + counts[LATE], len(records)),
                },
            }

    # Super-admin views

    def admin_overview(self, principal) -> Dict:
        with self.store.guard():
            authorize(principal, Action.ADMIN_OVERVIEW)

            now = self.clock.now()
            today = datetime.combine(now.date(), datetime.min.time())

            method_rows = db.session.query(
                AttendanceRecord.method, func.count(AttendanceRecord.id)
            ).filter(AttendanceRecord.marked_at >= today).group_by(AttendanceRecord.method).all()
            methods_today = {method.value: 0 for method in SessionMethod}
            methods_today.update({method: count for method, count in method_rows})

            return {
                'teachers': User.query.filter_by(role=UserRole.TEACHER, is_active=True).count(),
                'students': User.query.filter_by(role=UserRole.STUDENT, is_active=True).count(),
                'classes': SchoolClass.query.filter_by(is_active=True).count(),
                'active_sessions': AttendanceSession.query.filter_by(
                    state=SessionState.ACTIVE.value).count(),
                'records_today': sum(methods_today.values()),
                'unreviewed_flagged': self._unreviewed_flagged_query().count(),
                'methods_today': methods_today,
            }

    @staticmethod
    def _unreviewed_flagged_query():
        return AttendanceRecord.query.filter(
            AttendanceRecord.status == FLAGGED,
            AttendanceRecord.reviewed_at.is_(None),
        )

    def admin_pending_actions(self, principal) -> Dict:
        """Flagged records nobody reviewed and sessions left running too long."""
        with self.store.guard():
            authorize(principal, Action.ADMIN_PENDING_ACTIONS)

            max_minutes = current_app.config['SESSION_MAX_DURATION_MINUTES']
            cutoff = self.clock.now() - timedelta(minutes=max_minutes)

            flagged = self._unreviewed_flagged_query().order_by(
                AttendanceRecord.marked_at, AttendanceRecord.student_id
            ).all()
            overdue = AttendanceSession.query.filter(
                AttendanceSession.state == SessionState.ACTIVE.value,
                AttendanceSession.started_at < cutoff,
            ).order_by(AttendanceSession.started_at).all()

            return {
                'flagged_records': [record.to_dict() for record in flagged],
                'overdue_sessions': [
                    {
                        'session_id': s.id,
                        'class_id': s.class_id,
                        'teacher_id': s.teacher_id,
                        'started_at': isoformat(s.started_at),
                        'max_duration_minutes': max_minutes,
                    }
                    for s in overdue
                ],
                'total': len(flagged) + len(overdue),
            }

    def admin_active_sessions(self, principal) -> List[Dict]:
        with self.store.guard():
            authorize(principal, Action.ADMIN_ACTIVE_SESSIONS)

            result = []
            for s in self.store.list_active_sessions():
                enrolled = set(self.store.enrolled_student_ids(s.class_id))
                marked = {r.student_id for r in self.store.list_records(s.id)}
                result.append({
                    'session_id': s.id,
                    'class_id': s.class_id,
                    'subject_name': s.school_class.subject_name,
                    'teacher_id': s.teacher_id,
                    'teacher_name': s.teacher.name if s.teacher else None,
                    'method': s.method,
                    'started_at': isoformat(s.started_at),
                    'room_number': s.room_number,
                    'building_name': s.building_name,
                    'enrolled': len(enrolled),
                    'marked': len(marked),
                    'not_yet_marked': len(enrolled - marked),
                })
            return result

    def audit_logs(self, principal, action: str = None, actor_id: int = None,
                   target_id: str = None, page: int = 1, per_page: int = None) -> Dict:
        with self.store.guard():
            authorize(principal, Action.ADMIN_AUDIT_LOGS)
            return AuditService.query(action=action, actor_id=actor_id, target_id=target_id,
                                      page=page, per_page=per_page)
