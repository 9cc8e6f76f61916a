# backend/attendance_engine/services/qr_service.py
"""QR token generation and rendering service."""
import base64
import io
import json
import secrets

import qrcode
from flask import current_app


class QRService:
    """Service for QR code operations."""

    @staticmethod
    def generate_token(nbytes: int = 24) -> str:
        """Random URL-safe token; a new one is issued on every rotation."""
        return secrets.token_urlsafe(nbytes)

    @staticmethod
    def render_qr_image(session_id: str, qr_code: str) -> str:
        """Render the token currently in force as a PNG data URI."""
        qr_string = json.dumps(
            {'session_id': session_id, 'qr_code': qr_code},
            separators=(',', ':')
        )

        qr = qrcode.QRCode(
            version=None,  # Auto-determine size
            error_correction=qrcode.constants.ERROR_CORRECT_H,
            box_size=10,
            border=4,
        )
        qr.add_data(qr_string)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffered = io.BytesIO()
        img.save(buffered, format="PNG")
        img_str = base64.b64encode(buffered.getvalue()).decode()

        return f"data:image/png;base64,{img_str}"


def get_token_generator():
    return current_app.extensions['qr_token_generator']
