"""Test attendance marking and manual approval."""
from attendance_engine import db
from attendance_engine.models import AttendanceRecord
from attendance_engine.services.session_store import SessionStore


def records_for(session_id, student_id=None):
    db.session.expire_all()
    query = AttendanceRecord.query.filter_by(session_id=session_id)
    if student_id is not None:
        query = query.filter_by(student_id=student_id)
    return query.all()


def test_timing_window(users, start_session, mark, clock):
    session_id = start_session(late_after_minutes=10, auto_absent_minutes=20)
    first, second, third = users.students

    clock.advance(minutes=5)
    response = mark(first, session_id, qr_code='ABC')
    assert response.status_code == 201
    assert response.get_json()['data']['record']['status'] == 'present'

    clock.advance(minutes=10)
    response = mark(second, session_id, qr_code='ABC')
    assert response.status_code == 201
    record = response.get_json()['data']['record']
    assert record['status'] == 'late'
    assert record['minutes_after_start'] == 15

    clock.advance(minutes=10)
    response = mark(third, session_id, qr_code='ABC')
    assert response.status_code == 409
    data = response.get_json()
    assert data['code'] == 'SESSION_WINDOW_CLOSED'
    assert data['minutes_after_start'] == 25
    assert data['auto_absent_minutes'] == 20
    assert records_for(session_id, third.id) == []


def test_duplicate_mark(users, start_session, mark):
    session_id = start_session()
    student = users.students[0]

    assert mark(student, session_id, qr_code='ABC').status_code == 201

    response = mark(student, session_id, qr_code='ABC')
    assert response.status_code == 400
    data = response.get_json()
    assert data['code'] == 'DUPLICATE_ATTEMPT'

    records = records_for(session_id, student.id)
    assert len(records) == 1
    assert data['record_id'] == records[0].id
    assert records[0].status == 'present'
    assert records[0].fraud_flags == ['DUPLICATE_ATTEMPT']


def test_racing_duplicate_mark(users, start_session, mark, monkeypatch):
    session_id = start_session()
    student = users.students[0]
    assert mark(student, session_id, qr_code='ABC').status_code == 201

    real_get = SessionStore.get_record
    calls = []

    def miss_once(self, session_id, student_id):
        calls.append(student_id)
        if len(calls) == 1:
            return None
        return real_get(self, session_id, student_id)

    monkeypatch.setattr(SessionStore, 'get_record', miss_once)

    response = mark(student, session_id, qr_code='ABC')
    assert response.status_code == 400
    assert response.get_json()['code'] == 'DUPLICATE_ATTEMPT'
    assert len(records_for(session_id, student.id)) == 1


def test_stale_qr(client, auth_headers, users, start_session, mark):
    session_id = start_session()
    first, second, _ = users.students

    response = mark(first, session_id, qr_code='XYZ')
    assert response.status_code == 400
    assert response.get_json()['code'] == 'STALE_QR'
    assert 'record_id' not in response.get_json()
    assert records_for(session_id) == []

    client.put(f'/api/sessions/{session_id}/qr', headers=auth_headers(users.teacher))

    response = mark(first, session_id, qr_code='ABC')
    assert response.status_code == 400
    assert response.get_json()['code'] == 'STALE_QR'

    assert mark(second, session_id, qr_code='DEF').status_code == 201


def test_stale_qr_flag_mode(users, start_session, mark):
    session_id = start_session(stale_qr_policy='flag')
    student = users.students[0]

    response = mark(student, session_id, qr_code='XYZ')
    assert response.status_code == 400
    data = response.get_json()
    assert data['code'] == 'STALE_QR'

    record = records_for(session_id, student.id)[0]
    assert data['record_id'] == record.id
    assert record.status == 'flagged'
    assert record.fraud_flags == ['STALE_QR']


def test_mark_requires_enrollment(users, start_session, mark):
    session_id = start_session()
    response = mark(users.outsider, session_id, qr_code='ABC')
    assert response.status_code == 403
    assert response.get_json()['code'] == 'NOT_ENROLLED'


def test_only_students_mark(users, start_session, mark):
    session_id = start_session()
    response = mark(users.teacher, session_id, qr_code='ABC')
    assert response.status_code == 403
    assert response.get_json()['code'] == 'STUDENT_ONLY'


def test_mark_ended_session(client, auth_headers, users, start_session, mark):
    session_id = start_session()
    client.post(f'/api/sessions/{session_id}/end', headers=auth_headers(users.teacher))

    response = mark(users.students[0], session_id, qr_code='ABC')
    assert response.status_code == 409
    assert response.get_json()['code'] == 'SESSION_NOT_ACTIVE'


def test_mark_unknown_session(users, mark):
    response = mark(users.students[0], 'nope', qr_code='ABC')
    assert response.status_code == 404
    assert response.get_json()['code'] == 'SESSION_NOT_FOUND'


def test_face_session(users, start_session, mark):
    session_id = start_session(method='face')
    first, second, _ = users.students

    response = mark(first, session_id, method='face')
    assert response.status_code == 400
    assert response.get_json()['code'] == 'FACE_VERIFICATION_REQUIRED'

    response = mark(second, session_id, method='face', face_verified=True)
    assert response.status_code == 201
    assert response.get_json()['data']['record']['face_verified'] is True


def test_wrong_method_for_session(users, start_session, mark):
    session_id = start_session()
    response = mark(users.students[0], session_id, method='face', face_verified=True)
    assert response.status_code == 400
    assert response.get_json()['code'] == 'INVALID_METHOD'


def test_manual_session_rejects_self_mark(users, start_session, mark):
    session_id = start_session(method='manual')
    response = mark(users.students[0], session_id, method='manual')
    assert response.status_code == 400
    assert response.get_json()['code'] == 'INVALID_METHOD'


def test_mark_missing_fields(users, mark, client, auth_headers):
    response = client.post('/api/attendance/mark', json={'method': 'qr'},
                           headers=auth_headers(users.students[0]))
    assert response.status_code == 400
    assert response.get_json()['code'] == 'VALIDATION_ERROR'


def test_shared_device_is_flagged(client, auth_headers, users, start_session, mark, clock):
    session_id = start_session()
    first, second, _ = users.students

    clock.advance(minutes=1)
    assert mark(first, session_id, qr_code='ABC', device_id='phone-1').status_code == 201
    clock.advance(seconds=20)
    response = mark(second, session_id, qr_code='ABC', device_id='phone-1')

    assert response.status_code == 201
    data = response.get_json()
    assert data['message'] == 'Attendance recorded and flagged for review'
    assert data['data']['record']['status'] == 'flagged'
    assert data['data']['record']['fraud_flags'] == ['IMPOSSIBLE_VELOCITY']

    stats = client.get(f'/api/sessions/{session_id}/stats',
                       headers=auth_headers(users.teacher)).get_json()['data']
    assert stats['stats']['flagged'] == 1
    assert [a['student_id'] for a in stats['fraud_alerts']] == [second.id]


def test_manual_approve_creates_record(client, auth_headers, users, start_session):
    session_id = start_session(method='manual')
    student = users.students[0]

    response = client.post('/api/attendance/manual-approve',
                           json={'session_id': session_id, 'student_id': student.id,
                                 'reason': 'Signed the paper sheet'},
                           headers=auth_headers(users.teacher))

    assert response.status_code == 200
    record = response.get_json()['data']['record']
    assert record['status'] == 'present'
    assert record['method'] == 'manual'
    assert record['reviewed_by'] == users.teacher.id
    assert record['review_reason'] == 'Signed the paper sheet'


def test_manual_reject_creates_absent(client, auth_headers, users, start_session):
    session_id = start_session(method='manual')
    response = client.post('/api/attendance/manual-approve',
                           json={'session_id': session_id, 'student_id': users.students[1].id,
                                 'approved': False},
                           headers=auth_headers(users.teacher))
    assert response.get_json()['data']['record']['status'] == 'absent'


def test_manual_approve_resolves_flagged_record(client, auth_headers, users, start_session,
                                                mark, clock):
    session_id = start_session(stale_qr_policy='flag')
    student = users.students[0]
    clock.advance(minutes=12)
    mark(student, session_id, qr_code='OLD')

    response = client.post('/api/attendance/manual-approve',
                           json={'session_id': session_id, 'student_id': student.id,
                                 'approved': True, 'reason': 'Phone clock was off'},
                           headers=auth_headers(users.teacher))

    assert response.status_code == 200
    record = response.get_json()['data']['record']
    assert record['status'] == 'late'
    assert record['fraud_flags'] == ['STALE_QR']
    assert record['reviewed_at'] == clock.now().isoformat()


def test_manual_approve_existing_record(client, auth_headers, users, start_session, mark):
    session_id = start_session()
    student = users.students[0]
    mark(student, session_id, qr_code='ABC')

    response = client.post('/api/attendance/manual-approve',
                           json={'session_id': session_id, 'student_id': student.id},
                           headers=auth_headers(users.teacher))
    assert response.status_code == 400
    assert response.get_json()['code'] == 'DUPLICATE_ATTEMPT'


def test_manual_approve_permissions(client, auth_headers, users, start_session):
    session_id = start_session()
    body = {'session_id': session_id, 'student_id': users.students[0].id}

    response = client.post('/api/attendance/manual-approve', json=body,
                           headers=auth_headers(users.students[0]))
    assert response.get_json()['code'] == 'TEACHER_ONLY'

    response = client.post('/api/attendance/manual-approve', json=body,
                           headers=auth_headers(users.other_teacher))
    assert response.get_json()['code'] == 'NOT_CLASS_OWNER'

    response = client.post('/api/attendance/manual-approve',
                           json={'session_id': session_id, 'student_id': users.outsider.id},
                           headers=auth_headers(users.teacher))
    assert response.status_code == 403
    assert response.get_json()['code'] == 'NOT_ENROLLED'
