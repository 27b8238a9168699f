import json
import logging

from flask import has_app_context, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.audit_log import AuditLog
from security.bot_detector import LIKELY_BOT_THRESHOLD
from security.events import EventSink

logger = logging.getLogger(__name__)

AUDITED_PREFIXES = ("auth.", "session.hijack_detected", "session.unknown_id_rejected", "fingerprint.cleared")


def log_event(action: str, user_id=None, metadata=None):
    ip = user_agent = None
    if has_request_context():
        ip = request.remote_addr
        user_agent = request.headers.get("User-Agent", "")

    row = AuditLog(
        user_id=user_id,
        action=action[:80],
        ip=ip,
        user_agent=user_agent[:255] if user_agent else None,
        metadata_json=json.dumps(metadata, default=str) if metadata else None
    )
    db.session.add(row)
    db.session.commit()


def should_audit(name: str, data: dict) -> bool:
    if name.startswith(AUDITED_PREFIXES):
        return True
    return name == "bot.score" and data.get("score", 0) >= LIKELY_BOT_THRESHOLD


class AuditEventSink(EventSink):
    """Persists security-relevant events as AuditLog rows."""

    def emit(self, name: str, data: dict) -> None:
        if not has_app_context() or not should_audit(name, data):
            return
        try:
            log_event(name, user_id=data.get("user_id"), metadata=data)
        except SQLAlchemyError:
            db.session.rollback()
            raise
