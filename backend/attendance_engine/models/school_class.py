"""Class and enrollment models (roster is maintained by the hosting system)."""
from attendance_engine import db
from attendance_engine.models.base import BaseModel


class SchoolClass(BaseModel):
    """A class taught by one teacher."""

    __tablename__ = 'classes'

    teacher_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    subject_name = db.Column(db.String(255), nullable=False)
    subject_code = db.Column(db.String(50), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    enrollments = db.relationship('Enrollment', backref='school_class', lazy='dynamic')

    def __repr__(self):
        return f'<SchoolClass {self.subject_code or self.id}>'


class Enrollment(BaseModel):
    """A student's membership in a class."""

    __tablename__ = 'class_enrollments'
    __table_args__ = (
        db.UniqueConstraint('class_id', 'student_id', name='uq_enrollment_class_student'),
    )

    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    student = db.relationship('User')
