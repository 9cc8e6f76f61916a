"""Helper functions for the application."""
from datetime import datetime
from typing import Any, Optional

from flask import jsonify


def handle_error(error, status_code: int):
    """Handle application errors with consistent format."""
    return jsonify({
        'error': True,
        'message': getattr(error, 'description', None) or str(error),
        'status_code': status_code
    }), status_code


def success_response(data: Any = None, message: str = "Success", status_code: int = 200):
    """Return consistent success response."""
    response = {
        'error': False,
        'message': message
    }

    if data is not None:
        response['data'] = data

    return jsonify(response), status_code


def error_response(message: str, status_code: int = 400, code: Optional[str] = None):
    """Return consistent error response."""
    payload = {
        'error': True,
        'message': message,
        'status_code': status_code
    }
    if code:
        payload['code'] = code
    return jsonify(payload), status_code


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def session_duration(started_at: datetime, ended_at: datetime) -> dict:
    """Duration between two instants as total minutes and a short label."""
    minutes = int((ended_at - started_at).total_seconds() // 60)
    hours, remaining = divmod(minutes, 60)
    return {
        'total_minutes': minutes,
        'formatted': f"{hours}h {remaining}m" if hours > 0 else f"{minutes}m"
    }
