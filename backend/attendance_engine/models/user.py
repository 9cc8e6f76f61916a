"""User model: the principals the engine authorizes."""
from enum import Enum
from attendance_engine import db
from attendance_engine.models.base import BaseModel


class UserRole(Enum):
    """User roles enumeration."""
    STUDENT = 'student'
    TEACHER = 'teacher'
    SUPER_ADMIN = 'superAdmin'


class User(BaseModel):
    """A student, teacher or super-admin known to the hosting system.

    Accounts are provisioned outside the engine; it only reads them for
    names and system-wide counts.
    """

    __tablename__ = 'users'

    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    role = db.Column(db.Enum(UserRole), nullable=False, default=UserRole.STUDENT)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    taught_classes = db.relationship('SchoolClass', backref='teacher', lazy='dynamic')

    def is_teacher(self) -> bool:
        return self.role == UserRole.TEACHER

    def is_student(self) -> bool:
        return self.role == UserRole.STUDENT

    def is_super_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    def to_dict(self, exclude: list = None) -> dict:
        result = super().to_dict(exclude=exclude)
        result['role'] = self.role.value if self.role else None
        return result

    def __repr__(self) -> str:
        return f'<User {self.email}>'
