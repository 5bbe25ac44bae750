from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Sequence

from phonegate.logging import get_logger
from phonegate.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the structured log."""

    def emit(self, event: AuditEvent) -> None:
        logger.info(
            "audit_event",
            action=event.action,
            resource=event.resource,
            actor_id=event.actor_id,
            resource_id=event.resource_id,
            session_id=event.session_id,
            before=event.before,
            after=event.after,
        )


class StoreAuditSink:
    """Appends audit events to the store's audit log."""

    def __init__(self, store) -> None:
        self.store = store

    def emit(self, event: AuditEvent) -> None:
        self.store.record_audit_event(event)


class AuditEmitter:
    """Fans events out to every sink; a failing sink is logged and skipped.

    Emission happens after the state change committed, so a sink outage can
    never undo or block a lifecycle transition.
    """

    def __init__(self, sinks: Optional[Sequence[AuditSink]] = None) -> None:
        self.sinks: List[AuditSink] = list(sinks or [])

    def emit(self, event: AuditEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as exc:
                logger.error(
                    "audit_sink_failed",
                    sink=type(sink).__name__,
                    action=event.action,
                    resource_id=event.resource_id,
                    error=str(exc),
                )

    def emit_all(self, events: Iterable[AuditEvent]) -> None:
        for event in events:
            self.emit(event)
