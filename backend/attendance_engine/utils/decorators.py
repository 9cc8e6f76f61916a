# backend/attendance_engine/utils/decorators.py
"""Request decorators for authentication."""
from functools import wraps

from flask import g
from flask_jwt_extended import verify_jwt_in_request

from attendance_engine.services.credentials import principal_from_token


def principal_required(f):
    """Verify the bearer token and expose the caller as ``g.principal``.

    Role and ownership checks happen later, in the authorization gate.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        verify_jwt_in_request()
        g.principal = principal_from_token()
        return f(*args, **kwargs)
    return decorated_function


def current_principal():
    return g.principal
