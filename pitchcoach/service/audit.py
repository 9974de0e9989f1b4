from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from pitchcoach.logging import get_logger, sanitize_error_message
from pitchcoach.service.credentials import AuthStore
from pitchcoach.storage.models import AuditEvent, AuditLogEntry

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestMeta:
    """Requester attributes supplied by the HTTP layer."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None


class AuditRecorder:
    """Append-only audit trail that never interrupts the flow it observes."""

    def __init__(self, store: AuthStore) -> None:
        self.store: AuthStore = store

    def record(
        self,
        event: AuditEvent,
        user_id: Optional[str],
        meta: Optional[RequestMeta] = None,
    ) -> None:
        meta = meta or RequestMeta()
        try:
            self.store.append_audit_event(
                user_id,
                event,
                ip_address=meta.ip,
                user_agent=meta.user_agent,
            )
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                event_type=AuditEvent(event).value,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

    def history(self, user_id: Optional[str] = None, limit: int = 100) -> List[AuditLogEntry]:
        return self.store.list_audit_events(user_id=user_id, limit=limit)
