# File: backend/attendance_engine/api/sessions.py
"""Session lifecycle endpoints."""
from flask import Blueprint, request

from attendance_engine.models import SessionMethod
from attendance_engine.services.qr_service import QRService
from attendance_engine.services.report_service import ReportService
from attendance_engine.services.session_service import SessionService
from attendance_engine.utils.decorators import current_principal, principal_required
from attendance_engine.utils.helpers import isoformat, success_response
from attendance_engine.utils.validators import Validator

sessions_bp = Blueprint('sessions', __name__)


def session_view(attendance_session, include_qr: bool = True) -> dict:
    """Session as returned to clients, with the QR image for whoever may see the code."""
    data = attendance_session.to_dict(include_qr=include_qr)
    if (include_qr and attendance_session.method == SessionMethod.QR.value
            and attendance_session.current_qr_code):
        data['qr_image'] = QRService.render_qr_image(
            attendance_session.id, attendance_session.current_qr_code
        )
    return data


@sessions_bp.route('/start', methods=['POST'])
@principal_required
def start_session():
    """Start an attendance session for a class."""
    payload = Validator.parse_start_payload(request.get_json(silent=True) or {})
    attendance_session = SessionService().start(current_principal(), **payload)

    return success_response(
        data={
            'session_id': attendance_session.id,
            'session': session_view(attendance_session),
        },
        message='Session started successfully',
        status_code=201
    )


@sessions_bp.route('/<session_id>/qr', methods=['PUT'])
@principal_required
def refresh_qr(session_id):
    """Rotate the session's QR code."""
    attendance_session = SessionService().refresh_qr(current_principal(), session_id)

    return success_response(
        data={
            'qr_code': attendance_session.current_qr_code,
            'qr_image': QRService.render_qr_image(attendance_session.id,
                                                  attendance_session.current_qr_code),
            'qr_issued_at': isoformat(attendance_session.qr_issued_at),
            'qr_refresh_seconds': attendance_session.qr_refresh_seconds,
        },
        message='QR code refreshed'
    )


@sessions_bp.route('/<session_id>/end', methods=['POST'])
@principal_required
def end_session(session_id):
    """End a session and mark everyone who did not check in as absent."""
    summary = SessionService().end(current_principal(), session_id)
    return success_response(data={'summary': summary}, message='Session ended successfully')


@sessions_bp.route('/<session_id>', methods=['GET'])
@principal_required
def get_session(session_id):
    attendance_session, include_qr = SessionService().get_session(current_principal(), session_id)
    return success_response(data={'session': session_view(attendance_session, include_qr)})


@sessions_bp.route('/active/<int:class_id>', methods=['GET'])
@principal_required
def active_session(class_id):
    """Currently active session of a class, if any."""
    attendance_session, include_qr = SessionService().active_for_class(current_principal(), class_id)
    if attendance_session is None:
        return success_response(data={'session': None}, message='No active session')
    return success_response(data={'session': session_view(attendance_session, include_qr)})


@sessions_bp.route('/class/<int:class_id>', methods=['GET'])
@principal_required
def class_sessions(class_id):
    state = request.args.get('status') or None
    limit = Validator.optional_int(request.args, 'limit')

    principal = current_principal()
    sessions = SessionService().list_class_sessions(principal, class_id, state=state, limit=limit)

    return success_response(data={
        'sessions': [s.to_dict(include_qr=not principal.is_student) for s in sessions],
        'total': len(sessions),
    })


@sessions_bp.route('/<session_id>/stats', methods=['GET'])
@principal_required
def session_stats(session_id):
    """Live or final statistics for a session."""
    return success_response(data=ReportService().session_stats(current_principal(), session_id))
