"""Test session lifecycle endpoints."""
from attendance_engine import db
from attendance_engine.models import AttendanceRecord, AttendanceSession, AuditLog
from attendance_engine.services.session_store import SessionStore


def test_start_qr_session(client, auth_headers, users, school_class):
    response = client.post('/api/sessions/start',
                           json={'class_id': school_class.id, 'method': 'qr',
                                 'room_number': 'A101', 'building_name': 'Main'},
                           headers=auth_headers(users.teacher))

    assert response.status_code == 201
    data = response.get_json()
    assert data['error'] is False
    session = data['data']['session']
    assert data['data']['session_id'] == session['id']
    assert session['state'] == 'active'
    assert session['current_qr_code'] == 'ABC'
    assert session['late_after_minutes'] == 10
    assert session['auto_absent_minutes'] is None
    assert session['stale_qr_policy'] == 'reject'
    assert session['qr_image'].startswith('data:image/png;base64,')

    entry = AuditLog.query.filter_by(action='SESSION_STARTED').one()
    assert entry.target_id == session['id']
    assert entry.actor_id == users.teacher.id


def test_start_manual_session_has_no_qr(client, auth_headers, users, school_class):
    response = client.post('/api/sessions/start',
                           json={'class_id': school_class.id, 'method': 'manual'},
                           headers=auth_headers(users.teacher))
    session = response.get_json()['data']['session']
    assert 'current_qr_code' not in session
    assert 'qr_image' not in session


def test_second_start_conflicts(client, auth_headers, users, school_class, start_session):
    first = start_session()

    response = client.post('/api/sessions/start', json={'class_id': school_class.id},
                           headers=auth_headers(users.teacher))

    assert response.status_code == 409
    data = response.get_json()
    assert data['code'] == 'SESSION_ALREADY_ACTIVE'
    assert data['existing_session_id'] == first


def test_racing_start_loses_at_unique_index(client, auth_headers, users, school_class,
                                            start_session, monkeypatch):
    first = start_session()

    real_find = SessionStore.find_active_session
    calls = []

    def find_missing_once(self, class_id):
        calls.append(class_id)
        if len(calls) == 1:
            return None
        return real_find(self, class_id)

    monkeypatch.setattr(SessionStore, 'find_active_session', find_missing_once)

    response = client.post('/api/sessions/start', json={'class_id': school_class.id},
                           headers=auth_headers(users.teacher))

    assert response.status_code == 409
    assert response.get_json()['code'] == 'SESSION_ALREADY_ACTIVE'
    assert response.get_json()['existing_session_id'] == first
    assert AttendanceSession.query.filter_by(class_id=school_class.id, state='active').count() == 1


def test_new_session_allowed_after_end(client, auth_headers, users, start_session):
    first = start_session()
    client.post(f'/api/sessions/{first}/end', headers=auth_headers(users.teacher))

    second = start_session()
    assert second != first


def test_start_validation(client, auth_headers, users, school_class):
    headers = auth_headers(users.teacher)

    response = client.post('/api/sessions/start',
                           json={'class_id': school_class.id, 'late_after_minutes': 10,
                                 'auto_absent_minutes': 10},
                           headers=headers)
    assert response.status_code == 400
    assert response.get_json()['code'] == 'VALIDATION_ERROR'

    response = client.post('/api/sessions/start',
                           json={'class_id': school_class.id, 'late_after_minutes': -1},
                           headers=headers)
    assert response.status_code == 400

    response = client.post('/api/sessions/start',
                           json={'class_id': school_class.id, 'method': 'bluetooth'},
                           headers=headers)
    assert response.status_code == 400
    assert response.get_json()['code'] == 'INVALID_METHOD'

    response = client.post('/api/sessions/start', json={}, headers=headers)
    assert response.status_code == 400
    assert response.get_json()['code'] == 'VALIDATION_ERROR'

    assert AttendanceSession.query.count() == 0


def test_start_unknown_class(client, auth_headers, users):
    response = client.post('/api/sessions/start', json={'class_id': 999},
                           headers=auth_headers(users.teacher))
    assert response.status_code == 404
    assert response.get_json()['code'] == 'CLASS_NOT_FOUND'


def test_start_requires_class_owner(client, auth_headers, users, school_class):
    response = client.post('/api/sessions/start', json={'class_id': school_class.id},
                           headers=auth_headers(users.other_teacher))
    assert response.status_code == 403
    assert response.get_json()['code'] == 'NOT_CLASS_OWNER'

    response = client.post('/api/sessions/start', json={'class_id': school_class.id},
                           headers=auth_headers(users.students[0]))
    assert response.status_code == 403
    assert response.get_json()['code'] == 'TEACHER_ONLY'


def test_super_admin_can_start_any_class(client, auth_headers, users, school_class):
    response = client.post('/api/sessions/start', json={'class_id': school_class.id},
                           headers=auth_headers(users.admin))
    assert response.status_code == 201
    session = response.get_json()['data']['session']
    assert session['teacher_id'] == users.teacher.id
    assert session['started_by'] == users.admin.id


def test_refresh_qr_rotates_token(client, auth_headers, users, start_session, clock):
    session_id = start_session()
    clock.advance(seconds=30)

    response = client.put(f'/api/sessions/{session_id}/qr', headers=auth_headers(users.teacher))

    assert response.status_code == 200
    data = response.get_json()['data']
    assert data['qr_code'] == 'DEF'
    assert data['qr_issued_at'] == clock.now().isoformat()
    assert data['qr_image'].startswith('data:image/png;base64,')


def test_refresh_qr_rejects_non_qr_session(client, auth_headers, users, start_session):
    session_id = start_session(method='manual')
    response = client.put(f'/api/sessions/{session_id}/qr', headers=auth_headers(users.teacher))
    assert response.status_code == 400
    assert response.get_json()['code'] == 'INVALID_METHOD'


def test_refresh_qr_after_end(client, auth_headers, users, start_session):
    session_id = start_session()
    client.post(f'/api/sessions/{session_id}/end', headers=auth_headers(users.teacher))

    response = client.put(f'/api/sessions/{session_id}/qr', headers=auth_headers(users.teacher))
    assert response.status_code == 409
    assert response.get_json()['code'] == 'SESSION_NOT_ACTIVE'


def test_refresh_qr_on_ended_manual_session(client, auth_headers, users, start_session):
    session_id = start_session(method='manual')
    client.post(f'/api/sessions/{session_id}/end', headers=auth_headers(users.teacher))

    response = client.put(f'/api/sessions/{session_id}/qr', headers=auth_headers(users.teacher))
    assert response.status_code == 409
    assert response.get_json()['code'] == 'SESSION_NOT_ACTIVE'


def test_end_twice_fails(client, auth_headers, users, start_session):
    session_id = start_session()
    headers = auth_headers(users.teacher)

    assert client.post(f'/api/sessions/{session_id}/end', headers=headers).status_code == 200

    response = client.post(f'/api/sessions/{session_id}/end', headers=headers)
    assert response.status_code == 409
    data = response.get_json()
    assert data['code'] == 'SESSION_NOT_ACTIVE'
    assert data['state'] == 'ended'


def test_end_sweeps_absentees(client, auth_headers, users, start_session, mark, clock):
    session_id = start_session(late_after_minutes=10, auto_absent_minutes=20)
    first, second, third = users.students

    clock.advance(minutes=5)
    assert mark(first, session_id, qr_code='ABC').status_code == 201
    clock.advance(minutes=10)
    assert mark(second, session_id, qr_code='ABC').status_code == 201
    clock.advance(minutes=40)

    response = client.post(f'/api/sessions/{session_id}/end', headers=auth_headers(users.teacher))

    assert response.status_code == 200
    summary = response.get_json()['data']['summary']
    assert summary['present'] == 1
    assert summary['late'] == 1
    assert summary['absent'] == 1
    assert summary['flagged'] == 0
    assert summary['total_enrolled'] == 3
    assert summary['auto_absent_created'] == 1
    assert summary['duration'] == {'total_minutes': 55, 'formatted': '55m'}

    absent = AttendanceRecord.query.filter_by(session_id=session_id, student_id=third.id).one()
    assert absent.status == 'absent'
    assert absent.fraud_flags == []
    assert absent.method == 'qr'
    assert AttendanceRecord.query.filter_by(session_id=session_id).count() == 3


def test_end_requires_owner(client, auth_headers, users, start_session):
    session_id = start_session()
    response = client.post(f'/api/sessions/{session_id}/end',
                           headers=auth_headers(users.other_teacher))
    assert response.status_code == 403
    assert response.get_json()['code'] == 'NOT_CLASS_OWNER'

    response = client.post(f'/api/sessions/{session_id}/end', headers=auth_headers(users.admin))
    assert response.status_code == 200


def test_unknown_session(client, auth_headers, users):
    response = client.post('/api/sessions/missing/end', headers=auth_headers(users.teacher))
    assert response.status_code == 404
    assert response.get_json()['code'] == 'SESSION_NOT_FOUND'


def test_student_view_hides_qr_code(client, auth_headers, users, start_session):
    session_id = start_session()

    response = client.get(f'/api/sessions/{session_id}', headers=auth_headers(users.students[0]))
    assert response.status_code == 200
    session = response.get_json()['data']['session']
    assert 'current_qr_code' not in session
    assert 'qr_image' not in session

    response = client.get(f'/api/sessions/{session_id}', headers=auth_headers(users.teacher))
    assert response.get_json()['data']['session']['current_qr_code'] == 'ABC'

    response = client.get(f'/api/sessions/{session_id}', headers=auth_headers(users.outsider))
    assert response.status_code == 403
    assert response.get_json()['code'] == 'NOT_ENROLLED'


def test_active_and_class_sessions(client, auth_headers, users, school_class, start_session):
    headers = auth_headers(users.teacher)

    response = client.get(f'/api/sessions/active/{school_class.id}', headers=headers)
    assert response.get_json()['data']['session'] is None

    first = start_session()
    client.post(f'/api/sessions/{first}/end', headers=headers)
    second = start_session()

    response = client.get(f'/api/sessions/active/{school_class.id}', headers=headers)
    assert response.get_json()['data']['session']['id'] == second

    response = client.get(f'/api/sessions/class/{school_class.id}', headers=headers)
    assert response.get_json()['data']['total'] == 2

    response = client.get(f'/api/sessions/class/{school_class.id}?status=ended', headers=headers)
    sessions = response.get_json()['data']['sessions']
    assert [s['id'] for s in sessions] == [first]


def test_ended_session_is_immutable(client, auth_headers, users, start_session):
    session_id = start_session()
    headers = auth_headers(users.teacher)
    client.post(f'/api/sessions/{session_id}/end', headers=headers)

    ended_at = db.session.get(AttendanceSession, session_id).ended_at
    client.post(f'/api/sessions/{session_id}/end', headers=headers)
    client.put(f'/api/sessions/{session_id}/qr', headers=headers)

    db.session.expire_all()
    session = db.session.get(AttendanceSession, session_id)
    assert session.ended_at == ended_at
    assert session.current_qr_code == 'ABC'
