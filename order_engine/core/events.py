"""Collaborators notified after a unit of work commits.

The engine only depends on the two protocols below; deployments plug in a
websocket broadcaster or a persistent audit log.
"""

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("order_engine.audit")


@runtime_checkable
class EventBroadcaster(Protocol):
    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        ...


@runtime_checkable
class AuditSink(Protocol):
    def record(
        self,
        action: str,
        entity_type: str,
        entity_id: Any,
        actor: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class LoggingBroadcaster:
    """Writes every event to the log. Default when nothing else is wired."""

    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Event {event_name}: {payload}")


class LoggingAuditSink:
    def record(self, action, entity_type, entity_id, actor, metadata=None) -> None:
        audit_logger.info(
            f"{action} {entity_type}:{entity_id} by {actor or 'system'}",
            extra={"audit_metadata": metadata or {}},
        )


class Notifier:
    """
    Publishes events and audit records after commit.

    Failures are logged and swallowed: the business mutation has already
    committed and must not be reported as failed.
    """

    def __init__(self, broadcaster: EventBroadcaster, audit_sink: AuditSink):
        self.broadcaster = broadcaster
        self.audit_sink = audit_sink

    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        try:
            self.broadcaster.publish(event_name, payload)
        except Exception:
            logger.exception(f"Failed to broadcast {event_name} after commit")

    def audit(self, action: str, entity_type: str, entity_id: Any, actor: Optional[str], metadata=None) -> None:
        try:
            self.audit_sink.record(action, entity_type, entity_id, actor, metadata or {})
        except Exception:
            logger.exception(f"Failed to record audit entry {action} for {entity_type}:{entity_id}")
