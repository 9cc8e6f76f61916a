"""Models package with all models."""
from .base import BaseModel
from .user import User, UserRole
from .school_class import SchoolClass, Enrollment
from .attendance_session import AttendanceSession, SessionState, SessionMethod, StaleQrPolicy
from .attendance import AttendanceRecord, AttendanceStatus, FraudFlagKind
from .audit_log import AuditLog, AuditAction

__all__ = [
    'BaseModel', 'User', 'UserRole',
    'SchoolClass', 'Enrollment',
    'AttendanceSession', 'SessionState', 'SessionMethod', 'StaleQrPolicy',
    'AttendanceRecord', 'AttendanceStatus', 'FraudFlagKind',
    'AuditLog', 'AuditAction',
]
