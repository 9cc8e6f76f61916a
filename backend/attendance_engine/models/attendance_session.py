# backend/attendance_engine/models/attendance_session.py
"""Attendance session: a time-bounded window for marking one class."""
import uuid
from enum import Enum

from attendance_engine import db
from attendance_engine.models.base import BaseModel
from attendance_engine.utils.helpers import isoformat


class SessionState(Enum):
    ACTIVE = 'active'
    ENDED = 'ended'


class SessionMethod(Enum):
    QR = 'qr'
    MANUAL = 'manual'
    FACE = 'face'


class StaleQrPolicy(Enum):
    """What a mark with a non-current QR code does."""
    REJECT = 'reject'
    FLAG = 'flag'


def _new_session_id() -> str:
    return uuid.uuid4().hex


class AttendanceSession(BaseModel):
    """Session for tracking attendance of one class.

    At most one session per class may be ``active``; the partial unique index
    below makes the store reject a second one even when two starts race past
    the pre-check. Once ``ended`` the row is never written again.
    """

    __tablename__ = 'attendance_sessions'
    __table_args__ = (
        db.Index(
            'uq_attendance_sessions_one_active_per_class',
            'class_id',
            unique=True,
            sqlite_where=db.text("state = 'active'"),
            postgresql_where=db.text("state = 'active'"),
        ),
    )

    id = db.Column(db.String(32), primary_key=True, default=_new_session_id)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'), nullable=False, index=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    started_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    method = db.Column(db.String(20), nullable=False, default=SessionMethod.QR.value)
    state = db.Column(db.String(20), nullable=False, default=SessionState.ACTIVE.value)
    started_at = db.Column(db.DateTime, nullable=False)
    ended_at = db.Column(db.DateTime, nullable=True)

    # Timing policy, fixed at start
    late_after_minutes = db.Column(db.Integer, nullable=False, default=10)
    auto_absent_minutes = db.Column(db.Integer, nullable=True)
    face_required = db.Column(db.Boolean, nullable=False, default=False)
    stale_qr_policy = db.Column(db.String(10), nullable=False, default=StaleQrPolicy.REJECT.value)

    # Location
    room_number = db.Column(db.String(50), nullable=True)
    building_name = db.Column(db.String(100), nullable=True)

    # QR
    current_qr_code = db.Column(db.String(64), nullable=True)
    qr_issued_at = db.Column(db.DateTime, nullable=True)
    qr_refresh_seconds = db.Column(db.Integer, nullable=True)

    # Relationships
    school_class = db.relationship('SchoolClass', backref=db.backref('sessions', lazy='dynamic'))
    teacher = db.relationship('User', foreign_keys=[teacher_id])
    records = db.relationship('AttendanceRecord', backref='session', lazy='dynamic')

    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE.value

    def to_dict(self, include_qr: bool = True) -> dict:
        """Convert to dictionary.

        ``include_qr=False`` hides the current token from viewers who must not
        be able to replay it (students).
        """
        data = {
            'id': self.id,
            'class_id': self.class_id,
            'teacher_id': self.teacher_id,
            'started_by': self.started_by,
            'method': self.method,
            'state': self.state,
            'started_at': isoformat(self.started_at),
            'ended_at': isoformat(self.ended_at),
            'late_after_minutes': self.late_after_minutes,
            'auto_absent_minutes': self.auto_absent_minutes,
            'face_required': self.face_required,
            'stale_qr_policy': self.stale_qr_policy,
            'room_number': self.room_number,
            'building_name': self.building_name,
        }
        if self.method == SessionMethod.QR.value:
            data['qr_refresh_seconds'] = self.qr_refresh_seconds
            data['qr_issued_at'] = isoformat(self.qr_issued_at)
            if include_qr:
                data['current_qr_code'] = self.current_qr_code
        return data

    def __repr__(self):
        return f'<AttendanceSession {self.id} class={self.class_id} {self.state}>'
