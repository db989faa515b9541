from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from curasense.logging import get_logger
from curasense.storage.models import AuditAction, RequestContext, utcnow

logger = get_logger(__name__)


class AuditLogger:
    """Append-only audit trail written through the store.

    Writes are best effort: a failing write is logged and never reaches the
    caller, so auditing cannot block a login or logout.
    """

    def __init__(self, store, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    def record(
        self,
        action: AuditAction,
        resource: str,
        *,
        actor_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
        details: Optional[dict] = None,
    ) -> bool:
        context = context or RequestContext()
        try:
            self.store.append_audit_entry(
                action,
                resource,
                actor_id=actor_id,
                resource_id=resource_id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                details=details,
                now=self._clock(),
            )
        except Exception as exc:
            logger.warning(
                "audit_write_failed",
                action=AuditAction(action).value,
                actor_id=actor_id,
                error=str(exc),
            )
            return False
        return True

    def purge_before(self, cutoff: datetime) -> int:
        return self.store.delete_audit_entries_before(cutoff)
