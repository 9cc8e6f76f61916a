"""Shared fixtures for the attendance engine tests."""
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from attendance_engine import create_app, db
from attendance_engine.models import Enrollment, SchoolClass, User, UserRole
from attendance_engine.services.credentials import issue_access_token

T0 = datetime(2025, 3, 3, 9, 0, 0)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class TokenSequence:
    """Deterministic QR tokens: ABC, DEF, GHI, ..."""

    def __init__(self, tokens):
        self.tokens = list(tokens)
        self.issued = 0

    def __call__(self) -> str:
        if self.issued < len(self.tokens):
            token = self.tokens[self.issued]
        else:
            token = f"TOKEN{self.issued}"
        self.issued += 1
        return token


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def qr_tokens():
    return TokenSequence(['ABC', 'DEF', 'GHI', 'JKL'])


@pytest.fixture
def app(clock, qr_tokens):
    """Create test app."""
    app = create_app('testing')
    app.extensions['attendance_clock'] = clock
    app.extensions['qr_token_generator'] = qr_tokens
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


def _user(email, name, role):
    user = User(email=email, name=name, role=role)
    db.session.add(user)
    return user


@pytest.fixture
def users(app):
    """Super admin, two teachers, three enrolled students and one outsider."""
    people = SimpleNamespace(
        admin=_user('super@admin.com', 'Super Admin', UserRole.SUPER_ADMIN),
        teacher=_user('teacher@university.edu', 'Dr. Ahmed Hassan', UserRole.TEACHER),
        other_teacher=_user('other@university.edu', 'Dr. Omar Salem', UserRole.TEACHER),
        students=[
            _user('s1@student.edu', 'Fatima Ali', UserRole.STUDENT),
            _user('s2@student.edu', 'Zainab Khalid', UserRole.STUDENT),
            _user('s3@student.edu', 'Hussein Kareem', UserRole.STUDENT),
        ],
        outsider=_user('s4@student.edu', 'Noor Jamal', UserRole.STUDENT),
    )
    db.session.commit()
    return people


@pytest.fixture
def school_class(users):
    """Class taught by ``users.teacher`` with the three students enrolled."""
    school_class = SchoolClass(teacher_id=users.teacher.id, subject_name='Databases',
                               subject_code='CS302')
    db.session.add(school_class)
    db.session.flush()
    for student in users.students:
        db.session.add(Enrollment(class_id=school_class.id, student_id=student.id))
    db.session.commit()
    return school_class


@pytest.fixture
def auth_headers(app):
    """Build bearer headers for a user."""
    def make(user):
        return {'Authorization': f'Bearer {issue_access_token(user)}'}
    return make


@pytest.fixture
def start_session(client, auth_headers, users, school_class):
    """Start a session as the class teacher and return its id."""
    def start(**payload):
        body = {'class_id': school_class.id, 'method': 'qr'}
        body.update(payload)
        response = client.post('/api/sessions/start', json=body,
                               headers=auth_headers(users.teacher))
        assert response.status_code == 201, response.get_json()
        return response.get_json()['data']['session_id']
    return start


@pytest.fixture
def mark(client, auth_headers):
    """Post a mark for a student."""
    def post(student, session_id, **payload):
        body = {'session_id': session_id, 'method': 'qr'}
        body.update(payload)
        return client.post('/api/attendance/mark', json=body, headers=auth_headers(student))
    return post
