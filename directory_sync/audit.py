"""
Audit events emitted after provisioning and sync applies.

Delivery is fire-and-forget: a failing sink is logged and never affects the
operation that produced the event.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    employee_id: str
    action_type: str
    status: str
    message: str
    performed_by: str
    timestamp: str

    @classmethod
    def now(cls, employee_id: str, action_type: str, status: str, message: str,
            performed_by: str = 'system') -> 'AuditEvent':
        return cls(employee_id, action_type, status, message, performed_by,
                   datetime.now().isoformat(timespec='seconds'))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditSink(ABC):
    """Receiver of audit events; persistence is the receiver's concern."""

    @abstractmethod
    def emit(self, event: AuditEvent) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes audit events as JSON to the ``audit`` logger."""

    def __init__(self, logger_name: str = 'audit'):
        self.logger = logging.getLogger(logger_name)

    def emit(self, event: AuditEvent) -> None:
        level = logging.INFO if event.status in ('success', 'partial') else logging.WARNING
        self.logger.log(level, json.dumps(event.to_dict(), ensure_ascii=False))


class MemoryAuditSink(AuditSink):
    """Keeps events in memory, for callers that forward them in bulk."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)


def emit_event(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Deliver an event, logging and discarding any sink failure."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as e:
        logger.error(f"Failed to emit audit event {event.action_type} for {event.employee_id}: {e}")
