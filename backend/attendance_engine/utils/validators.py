"""Request payload validation."""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from attendance_engine.services.fraud_policy import MarkEvidence
from attendance_engine.utils.errors import ValidationError


class Validator:
    """Validation helper class.

    Each ``parse_*`` method returns clean values or raises ValidationError.
    """

    @staticmethod
    def validate_required_fields(data: Dict, required_fields: List[str]) -> None:
        missing = [field for field in required_fields if data.get(field) in (None, '')]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}",
                                  fields=missing)

    @staticmethod
    def optional_int(data: Dict, field: str) -> Optional[int]:
        value = data.get(field)
        if value is None or value == '':
            return None
        if isinstance(value, bool):
            raise ValidationError(f"{field} must be an integer", field=field)
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be an integer", field=field)

    @staticmethod
    def optional_float(data: Dict, field: str) -> Optional[float]:
        value = data.get(field)
        if value is None or value == '':
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be a number", field=field)

    @staticmethod
    def optional_bool(data: Dict, field: str, default: bool = False) -> bool:
        value = data.get(field, default)
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ('true', '1', 'yes'):
            return True
        if isinstance(value, str) and value.lower() in ('false', '0', 'no', ''):
            return False
        raise ValidationError(f"{field} must be a boolean", field=field)

    @staticmethod
    def parse_date(value: Optional[str], field: str) -> Optional[date]:
        if not value:
            return None
        try:
            return datetime.strptime(value, '%Y-%m-%d').date()
        except ValueError:
            raise ValidationError(f"{field} must be a date in YYYY-MM-DD format", field=field)

    @staticmethod
    def parse_start_payload(data: Dict[str, Any]) -> Dict[str, Any]:
        Validator.validate_required_fields(data, ['class_id'])
        return {
            'class_id': Validator.optional_int(data, 'class_id'),
            'method': data.get('method') or 'qr',
            'late_after_minutes': Validator.optional_int(data, 'late_after_minutes'),
            'auto_absent_minutes': Validator.optional_int(data, 'auto_absent_minutes'),
            'face_required': Validator.optional_bool(data, 'face_required'),
            'room_number': data.get('room_number'),
            'building_name': data.get('building_name'),
            'stale_qr_policy': data.get('stale_qr_policy'),
        }

    @staticmethod
    def parse_mark_payload(data: Dict[str, Any]):
        """Return ``(session_id, evidence)``."""
        Validator.validate_required_fields(data, ['session_id', 'method'])
        evidence = MarkEvidence(
            method=data['method'],
            qr_code=data.get('qr_code'),
            face_verified=Validator.optional_bool(data, 'face_verified'),
            device_id=data.get('device_id'),
            latitude=Validator.optional_float(data, 'latitude'),
            longitude=Validator.optional_float(data, 'longitude'),
        )
        return str(data['session_id']), evidence

    @staticmethod
    def parse_manual_payload(data: Dict[str, Any]) -> Dict[str, Any]:
        Validator.validate_required_fields(data, ['session_id', 'student_id'])
        return {
            'session_id': str(data['session_id']),
            'student_id': Validator.optional_int(data, 'student_id'),
            'approved': Validator.optional_bool(data, 'approved', default=True),
            'reason': data.get('reason'),
        }
