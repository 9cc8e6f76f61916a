# backend/attendance_engine/models/attendance.py
"""Attendance record model with verification details."""
from enum import Enum

from attendance_engine import db
from attendance_engine.models.base import BaseModel
from attendance_engine.utils.helpers import isoformat


class AttendanceStatus(Enum):
    PRESENT = 'present'
    LATE = 'late'
    ABSENT = 'absent'
    FLAGGED = 'flagged'


class FraudFlagKind(Enum):
    STALE_QR = 'STALE_QR'
    IMPOSSIBLE_VELOCITY = 'IMPOSSIBLE_VELOCITY'
    DUPLICATE_ATTEMPT = 'DUPLICATE_ATTEMPT'


class AttendanceRecord(BaseModel):
    """One student's attendance in one session.

    ``status`` is decided when the record is written. The auto-absent sweep
    only adds rows; a ``flagged`` row may later be resolved by an explicit
    teacher review (``reviewed_*`` columns).
    """

    __tablename__ = 'attendance_records'
    __table_args__ = (
        db.UniqueConstraint('session_id', 'student_id', name='uq_attendance_session_student'),
    )

    session_id = db.Column(db.String(32), db.ForeignKey('attendance_sessions.id'),
                           nullable=False, index=True)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    method = db.Column(db.String(20), nullable=False)  # qr, manual, face
    status = db.Column(db.String(20), nullable=False)
    marked_at = db.Column(db.DateTime, nullable=False)
    minutes_after_start = db.Column(db.Float, nullable=True)

    # Verification details
    face_verified = db.Column(db.Boolean, nullable=False, default=False)
    fraud_flags = db.Column(db.JSON, nullable=False, default=list)
    source_qr_code = db.Column(db.String(64), nullable=True)
    device_id = db.Column(db.String(128), nullable=True)

    # Location where check-in happened
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    # Teacher review of flagged or manual records
    reviewed_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    review_reason = db.Column(db.Text, nullable=True)

    student = db.relationship('User', foreign_keys=[student_id])

    def has_flag(self, kind: FraudFlagKind) -> bool:
        return kind.value in (self.fraud_flags or [])

    def add_flag(self, kind: FraudFlagKind) -> None:
        """Add a flag with set semantics."""
        flags = list(self.fraud_flags or [])
        if kind.value not in flags:
            flags.append(kind.value)
        # JSON columns only detect reassignment
        self.fraud_flags = flags

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'class_id': self.class_id,
            'student_id': self.student_id,
            'method': self.method,
            'status': self.status,
            'marked_at': isoformat(self.marked_at),
            'minutes_after_start': self.minutes_after_start,
            'face_verified': self.face_verified,
            'fraud_flags': list(self.fraud_flags or []),
            'reviewed_by': self.reviewed_by,
            'reviewed_at': isoformat(self.reviewed_at),
            'review_reason': self.review_reason,
        }

    def __repr__(self):
        return f'<AttendanceRecord {self.student_id}-{self.session_id}>'
