# File: backend/attendance_engine/api/attendance.py
"""Attendance marking and reporting endpoints."""
from flask import Blueprint, Response, current_app, request

from attendance_engine import limiter
from attendance_engine.services.report_service import ReportService
from attendance_engine.services.session_service import SessionService
from attendance_engine.utils.decorators import current_principal, principal_required
from attendance_engine.utils.helpers import success_response
from attendance_engine.utils.validators import Validator

attendance_bp = Blueprint('attendance', __name__)


@attendance_bp.route('/mark', methods=['POST'])
@limiter.limit(lambda: current_app.config['MARK_ATTENDANCE_RATE_LIMIT'])
@principal_required
def mark_attendance():
    """Student marks their own attendance."""
    session_id, evidence = Validator.parse_mark_payload(request.get_json(silent=True) or {})
    record = SessionService().mark_attendance(current_principal(), session_id, evidence)

    message = 'Attendance recorded'
    if record.fraud_flags:
        message = 'Attendance recorded and flagged for review'

    return success_response(data={'record': record.to_dict()}, message=message, status_code=201)


@attendance_bp.route('/manual-approve', methods=['POST'])
@principal_required
def manual_approve():
    """Teacher marks a student by hand or resolves a flagged record."""
    payload = Validator.parse_manual_payload(request.get_json(silent=True) or {})
    record = SessionService().manual_mark(current_principal(), **payload)

    return success_response(
        data={'record': record.to_dict()},
        message='Attendance approved' if payload['approved'] else 'Attendance rejected'
    )


@attendance_bp.route('/session/<session_id>', methods=['GET'])
@principal_required
def session_attendance(session_id):
    """Attendance of one session grouped by status."""
    return success_response(data=ReportService().session_attendance(current_principal(), session_id))


@attendance_bp.route('/student/<int:student_id>', methods=['GET'])
@principal_required
def student_attendance(student_id):
    class_id = Validator.optional_int(request.args, 'class_id')
    history = ReportService().student_history(current_principal(), student_id, class_id)
    return success_response(data=history)


def _report_dates():
    return (Validator.parse_date(request.args.get('from_date'), 'from_date'),
            Validator.parse_date(request.args.get('to_date'), 'to_date'))


@attendance_bp.route('/report/<int:class_id>', methods=['GET'])
@principal_required
def class_report(class_id):
    """Attendance report for a class across its sessions."""
    from_date, to_date = _report_dates()
    report = ReportService().class_report(current_principal(), class_id, from_date, to_date)
    return success_response(data=report)


@attendance_bp.route('/export/<int:class_id>', methods=['GET'])
@principal_required
def export_report(class_id):
    """Class report student rows as CSV."""
    from_date, to_date = _report_dates()
    csv_data = ReportService().export_class_report(current_principal(), class_id,
                                                   from_date, to_date)
    return Response(
        csv_data,
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename=attendance_class_{class_id}.csv'}
    )
