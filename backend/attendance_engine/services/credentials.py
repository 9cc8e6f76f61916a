"""Resolve verified bearer tokens into principals.

Token signature and expiry are checked by Flask-JWT-Extended before any of
this runs; here we only read the identity and the role claim.
"""
from dataclasses import dataclass

from flask import current_app
from flask_jwt_extended import create_access_token, get_jwt, get_jwt_identity

from attendance_engine.models.user import UserRole
from attendance_engine.utils.errors import AuthenticationError, INVALID_TOKEN

ROLES = {role.value for role in UserRole}


@dataclass(frozen=True)
class Principal:
    """The authenticated caller."""

    id: int
    role: str

    @property
    def is_student(self) -> bool:
        return self.role == UserRole.STUDENT.value

    @property
    def is_teacher(self) -> bool:
        return self.role == UserRole.TEACHER.value

    @property
    def is_super_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN.value


def principal_from_token() -> Principal:
    """Build the principal for the current request's verified JWT."""
    identity = get_jwt_identity()
    role = get_jwt().get(current_app.config['JWT_ROLE_CLAIM'])

    try:
        user_id = int(identity)
    except (TypeError, ValueError):
        raise AuthenticationError('Token identity is not a user id', INVALID_TOKEN)

    if role not in ROLES:
        raise AuthenticationError('Token carries no recognised role', INVALID_TOKEN)

    return Principal(id=user_id, role=role)


def issue_access_token(user) -> str:
    """Mint a token for a user (CLI and tests; real issuance is external)."""
    return create_access_token(
        identity=str(user.id),
        additional_claims={current_app.config['JWT_ROLE_CLAIM']: user.role.value}
    )
