"""Append-only audit trail."""
from attendance_engine import db
from attendance_engine.models.base import BaseModel
from attendance_engine.utils.helpers import isoformat


class AuditAction:
    SESSION_STARTED = 'SESSION_STARTED'
    SESSION_ENDED = 'SESSION_ENDED'
    QR_REFRESHED = 'QR_REFRESHED'
    ATTENDANCE_MARKED = 'ATTENDANCE_MARKED'
    ATTENDANCE_REJECTED = 'ATTENDANCE_REJECTED'
    MANUAL_MARK = 'MANUAL_MARK'
    FLAGGED_RECORD_REVIEWED = 'FLAGGED_RECORD_REVIEWED'
    AUTO_ABSENT_SWEEP = 'AUTO_ABSENT_SWEEP'


class AuditLog(BaseModel):
    __tablename__ = 'audit_logs'

    action = db.Column(db.String(50), nullable=False, index=True)
    actor_id = db.Column(db.Integer, nullable=True, index=True)
    actor_role = db.Column(db.String(20), nullable=True)
    target_type = db.Column(db.String(50), nullable=True)
    target_id = db.Column(db.String(64), nullable=True)
    details = db.Column(db.JSON, nullable=False, default=dict)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'action': self.action,
            'actor_id': self.actor_id,
            'actor_role': self.actor_role,
            'target_type': self.target_type,
            'target_id': self.target_id,
            'details': self.details or {},
            'created_at': isoformat(self.created_at),
        }

    def __repr__(self):
        return f'<AuditLog {self.action} {self.target_type}:{self.target_id}>'
