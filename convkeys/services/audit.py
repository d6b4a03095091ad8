from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker

from convkeys.models.core import AuditLog


def add_audit_log(
    db: Session,
    *,
    event_type: str,
    user_id: str | None = None,
    conversation_id: str | None = None,
    details: str | None = None,
) -> AuditLog:
    row = AuditLog(
        user_id=user_id,
        conversation_id=conversation_id,
        event_type=event_type,
        event_timestamp=datetime.utcnow(),
        details=details,
    )
    db.add(row)
    return row


class AuditTrail:
    """Writes ``encryption.*`` events to the local audit table."""

    def __init__(self, session_factory: sessionmaker[Session], *, user_id: str | None = None):
        self._session_factory = session_factory
        self._user_id = user_id

    def record(self, event_type: str, *, conversation_id: str | None = None, details: str | None = None) -> None:
        with self._session_factory() as db:
            add_audit_log(
                db,
                event_type=event_type,
                user_id=self._user_id,
                conversation_id=conversation_id,
                details=details,
            )
            db.commit()

    def events(self, *, conversation_id: str | None = None, event_type: str | None = None) -> list[AuditLog]:
        with self._session_factory() as db:
            q = db.query(AuditLog)
            if conversation_id is not None:
                q = q.filter(AuditLog.conversation_id == conversation_id)
            if event_type is not None:
                q = q.filter(AuditLog.event_type == event_type)
            return q.order_by(AuditLog.event_timestamp).all()
