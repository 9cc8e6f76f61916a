"""Audit trail writes and queries."""
from typing import Optional

from flask import current_app

from attendance_engine import db
from attendance_engine.models.audit_log import AuditLog


class AuditService:
    """Append-only audit log.

    ``record`` only adds the row to the current database session, so the
    entry commits or rolls back together with the change it describes.
    """

    @staticmethod
    def record(action: str, principal=None, target_type: str = None,
               target_id=None, **details) -> AuditLog:
        entry = AuditLog(
            action=action,
            actor_id=principal.id if principal else None,
            actor_role=principal.role if principal else None,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            details=details,
        )
        db.session.add(entry)
        return entry

    @staticmethod
    def query(action: Optional[str] = None, actor_id: Optional[int] = None,
              target_id: Optional[str] = None, page: int = 1, per_page: int = None):
        """Newest-first page of audit entries."""
        per_page = per_page or current_app.config['DEFAULT_PAGE_SIZE']

        query = AuditLog.query
        if action:
            query = query.filter_by(action=action)
        if actor_id is not None:
            query = query.filter_by(actor_id=actor_id)
        if target_id:
            query = query.filter_by(target_id=str(target_id))

        pagination = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).paginate(
            page=page, per_page=per_page, error_out=False
        )

        return {
            'entries': [entry.to_dict() for entry in pagination.items],
            'pagination': {
                'page': pagination.page,
                'per_page': pagination.per_page,
                'total': pagination.total,
                'pages': pagination.pages,
            }
        }
