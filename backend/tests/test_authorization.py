"""Test the authorization gate."""
from types import SimpleNamespace

import pytest

from attendance_engine.services.authorization import Action, authorize
from attendance_engine.services.credentials import Principal
from attendance_engine.utils.errors import AuthorizationError

STUDENT = Principal(id=10, role='student')
TEACHER = Principal(id=2, role='teacher')
ADMIN = Principal(id=1, role='superAdmin')
OWN_CLASS = SimpleNamespace(id=5, teacher_id=2)
OTHER_CLASS = SimpleNamespace(id=6, teacher_id=3)

ADMIN_ENDPOINTS = [
    '/api/admin/overview',
    '/api/admin/pending-actions',
    '/api/admin/sessions/active',
    '/api/admin/audit-logs',
]


def denied(principal, action, **resources):
    with pytest.raises(AuthorizationError) as excinfo:
        authorize(principal, action, **resources)
    return excinfo.value.code


@pytest.mark.parametrize('action', [Action.ADMIN_OVERVIEW, Action.ADMIN_PENDING_ACTIONS,
                                    Action.ADMIN_ACTIVE_SESSIONS, Action.ADMIN_AUDIT_LOGS])
def test_admin_actions_need_super_admin(action):
    assert denied(STUDENT, action) == 'SUPER_ADMIN_ONLY'
    assert denied(TEACHER, action) == 'SUPER_ADMIN_ONLY'
    authorize(ADMIN, action)


def test_teacher_actions():
    for action in (Action.START_SESSION, Action.REFRESH_QR, Action.END_SESSION,
                   Action.MANUAL_MARK, Action.VIEW_SESSION_STATS, Action.VIEW_CLASS_REPORT):
        authorize(TEACHER, action, school_class=OWN_CLASS)
        authorize(ADMIN, action, school_class=OTHER_CLASS)
        assert denied(TEACHER, action, school_class=OTHER_CLASS) == 'NOT_CLASS_OWNER'
        assert denied(STUDENT, action, school_class=OWN_CLASS) == 'TEACHER_ONLY'


def test_mark_is_student_only():
    authorize(STUDENT, Action.MARK_ATTENDANCE, student_id=10, enrolled=True)
    assert denied(STUDENT, Action.MARK_ATTENDANCE, enrolled=False) == 'NOT_ENROLLED'
    assert denied(TEACHER, Action.MARK_ATTENDANCE) == 'STUDENT_ONLY'
    assert denied(ADMIN, Action.MARK_ATTENDANCE) == 'STUDENT_ONLY'


def test_students_read_only_their_records():
    authorize(STUDENT, Action.READ_STUDENT_RECORDS, student_id=10)
    assert denied(STUDENT, Action.READ_STUDENT_RECORDS, student_id=11) == 'NOT_RECORD_OWNER'


def test_unknown_role_is_denied():
    assert denied(Principal(id=9, role='parent'), Action.VIEW_SESSION) == 'TEACHER_ONLY'


@pytest.mark.parametrize('path', ADMIN_ENDPOINTS)
def test_student_on_admin_endpoint(client, auth_headers, users, path):
    response = client.get(path, headers=auth_headers(users.students[0]))

    assert response.status_code == 403
    data = response.get_json()
    assert data['code'] == 'SUPER_ADMIN_ONLY'
    assert set(data) == {'error', 'message', 'status_code', 'code'}
    assert data['error'] is True
