"""Authorization gate.

One capability table says which role may attempt which action; ownership
rules then narrow it to the classes, sessions and records the principal may
touch. Every endpoint goes through ``authorize``.
"""
from enum import Enum
from typing import Optional

from attendance_engine.models.user import UserRole
from attendance_engine.utils.errors import (
    AuthorizationError, NOT_CLASS_OWNER, NOT_ENROLLED, NOT_RECORD_OWNER,
    STUDENT_ONLY, SUPER_ADMIN_ONLY, TEACHER_ONLY
)


class Action(Enum):
    START_SESSION = 'start_session'
    REFRESH_QR = 'refresh_qr'
    END_SESSION = 'end_session'
    MARK_ATTENDANCE = 'mark_attendance'
    MANUAL_MARK = 'manual_mark'
    VIEW_SESSION = 'view_session'
    VIEW_SESSION_STATS = 'view_session_stats'
    VIEW_CLASS_REPORT = 'view_class_report'
    READ_STUDENT_RECORDS = 'read_student_records'
    ADMIN_OVERVIEW = 'admin_overview'
    ADMIN_PENDING_ACTIONS = 'admin_pending_actions'
    ADMIN_ACTIVE_SESSIONS = 'admin_active_sessions'
    ADMIN_AUDIT_LOGS = 'admin_audit_logs'


ADMIN_ACTIONS = frozenset({
    Action.ADMIN_OVERVIEW,
    Action.ADMIN_PENDING_ACTIONS,
    Action.ADMIN_ACTIVE_SESSIONS,
    Action.ADMIN_AUDIT_LOGS,
})

TEACHER_ACTIONS = frozenset({
    Action.START_SESSION,
    Action.REFRESH_QR,
    Action.END_SESSION,
    Action.MANUAL_MARK,
    Action.VIEW_SESSION,
    Action.VIEW_SESSION_STATS,
    Action.VIEW_CLASS_REPORT,
    Action.READ_STUDENT_RECORDS,
})

STUDENT_ACTIONS = frozenset({
    Action.MARK_ATTENDANCE,
    Action.READ_STUDENT_RECORDS,
    Action.VIEW_SESSION,
})

CAPABILITIES = {
    UserRole.STUDENT.value: STUDENT_ACTIONS,
    UserRole.TEACHER.value: TEACHER_ACTIONS,
    UserRole.SUPER_ADMIN.value: TEACHER_ACTIONS | ADMIN_ACTIONS,
}


def _deny(message: str, code: str):
    raise AuthorizationError(message, code)


def authorize(principal, action: Action, school_class=None,
              student_id: Optional[int] = None,
              enrolled: Optional[bool] = None) -> None:
    """Raise AuthorizationError unless ``principal`` may perform ``action``.

    Resource arguments are optional; a rule is only checked when the
    resource it needs is supplied. ``enrolled`` is whether a student
    principal is enrolled in ``school_class``.
    """
    allowed = CAPABILITIES.get(principal.role, frozenset())

    if action not in allowed:
        if action in ADMIN_ACTIONS:
            _deny('Super admin access required', SUPER_ADMIN_ONLY)
        if action == Action.MARK_ATTENDANCE:
            _deny('Only students can mark their own attendance', STUDENT_ONLY)
        _deny('Teacher access required', TEACHER_ONLY)

    if principal.is_super_admin:
        return

    if principal.is_teacher:
        if school_class is not None and school_class.teacher_id != principal.id:
            _deny('You are not the teacher of this class', NOT_CLASS_OWNER)
        return

    # Students act on their own records in classes they belong to
    if student_id is not None and student_id != principal.id:
        _deny('You can only access your own attendance records', NOT_RECORD_OWNER)
    if enrolled is False:
        _deny('You are not enrolled in this class', NOT_ENROLLED)
