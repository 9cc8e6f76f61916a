# File: backend/attendance_engine/api/admin.py
"""Super-admin endpoints."""
from flask import Blueprint, current_app, request

from attendance_engine.services.report_service import ReportService
from attendance_engine.utils.decorators import current_principal, principal_required
from attendance_engine.utils.helpers import success_response
from attendance_engine.utils.validators import Validator

admin_bp = Blueprint('admin', __name__)


@admin_bp.route('/overview', methods=['GET'])
@principal_required
def overview():
    """System-wide counts."""
    return success_response(data=ReportService().admin_overview(current_principal()))


@admin_bp.route('/pending-actions', methods=['GET'])
@principal_required
def pending_actions():
    return success_response(data=ReportService().admin_pending_actions(current_principal()))


@admin_bp.route('/sessions/active', methods=['GET'])
@principal_required
def active_sessions():
    sessions = ReportService().admin_active_sessions(current_principal())
    return success_response(data={'sessions': sessions, 'total': len(sessions)})


@admin_bp.route('/audit-logs', methods=['GET'])
@principal_required
def audit_logs():
    page = Validator.optional_int(request.args, 'page') or 1
    per_page = min(
        Validator.optional_int(request.args, 'per_page') or current_app.config['DEFAULT_PAGE_SIZE'],
        current_app.config['MAX_PAGE_SIZE']
    )
    result = ReportService().audit_logs(
        current_principal(),
        action=request.args.get('action'),
        actor_id=Validator.optional_int(request.args, 'actor_id'),
        target_id=request.args.get('target_id'),
        page=page,
        per_page=per_page,
    )
    return success_response(data=result)
