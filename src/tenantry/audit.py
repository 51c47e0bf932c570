"""Best-effort audit recording for identity and authorization mutations."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Callable, Mapping

from .directories import AuditSink
from .models import AuditEvent

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]

ENTITY_PRINCIPAL = "profiles"
ENTITY_TENANT = "organizations"
ENTITY_USER_MANAGEMENT = "user_management"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class AuditTrail:
    """Append :class:`AuditEvent` records to an :class:`AuditSink`.

    Sink failures are logged and swallowed. The mutation being audited has
    already been persisted and is never rolled back because of them.
    """

    def __init__(self, sink: AuditSink | None, *, clock: Clock | None = None) -> None:
        self.sink = sink
        self.clock = clock or _utcnow

    async def record(
        self,
        *,
        tenant_id: str | None,
        actor_id: str | None,
        entity_type: str,
        entity_id: str | None,
        action: str,
        actor_display: str | None = None,
        before: Mapping[str, Any] | None = None,
        after: Mapping[str, Any] | None = None,
    ) -> AuditEvent | None:
        if self.sink is None:
            return None
        event = AuditEvent(
            tenant_id=tenant_id,
            actor_id=actor_id,
            actor_display=actor_display,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            before=dict(before) if before is not None else None,
            after=dict(after) if after is not None else None,
            created_at=self.clock(),
        )
        try:
            await self.sink.append(event)
        except Exception:
            logger.warning(
                "Audit write failed for %s %s on %s:%s",
                action,
                entity_id,
                entity_type,
                tenant_id,
                exc_info=True,
            )
            return None
        return event


__all__ = [
    "ENTITY_PRINCIPAL",
    "ENTITY_TENANT",
    "ENTITY_USER_MANAGEMENT",
    "AuditTrail",
    "Clock",
]
