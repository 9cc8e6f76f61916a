# File: backend/attendance_engine/services/seed_service.py
"""Database seeding service for demo data."""
from attendance_engine import db
from attendance_engine.models import Enrollment, SchoolClass, User, UserRole


class SeedService:
    """Service to seed database with a small demo roster."""

    @staticmethod
    def seed_all() -> dict:
        """Seed all demo data; safe to run more than once."""
        super_admin = SeedService.seed_user('super@admin.com', 'Super Admin', UserRole.SUPER_ADMIN)
        teacher = SeedService.seed_user('ahmed.hassan@university.edu', 'Dr. Ahmed Hassan',
                                        UserRole.TEACHER)
        students = SeedService.seed_students()
        school_class = SeedService.seed_class(teacher, students)

        db.session.commit()
        print(f"✅ Seeded class {school_class.subject_code} with {len(students)} students")

        return {
            'super_admin': super_admin,
            'teacher': teacher,
            'students': students,
            'class': school_class,
        }

    @staticmethod
    def seed_user(email: str, name: str, role: UserRole) -> User:
        user = User.query.filter_by(email=email).first()
        if not user:
            user = User(email=email, name=name, role=role)
            db.session.add(user)
            db.session.flush()
        return user

    @staticmethod
    def seed_students() -> list:
        students_data = [
            ('Fatima Ali', 'fatima.ali'),
            ('Omar Salem', 'omar.salem'),
            ('Zainab Khalid', 'zainab.khalid'),
        ]
        return [
            SeedService.seed_user(f"{username}@student.university.edu", name, UserRole.STUDENT)
            for name, username in students_data
        ]

    @staticmethod
    def seed_class(teacher: User, students: list) -> SchoolClass:
        school_class = SchoolClass.query.filter_by(subject_code='CS301').first()
        if not school_class:
            school_class = SchoolClass(teacher_id=teacher.id, subject_name='Advanced Programming',
                                       subject_code='CS301')
            db.session.add(school_class)
            db.session.flush()

        for student in students:
            exists = Enrollment.query.filter_by(class_id=school_class.id,
                                                student_id=student.id).first()
            if not exists:
                db.session.add(Enrollment(class_id=school_class.id, student_id=student.id))

        return school_class
