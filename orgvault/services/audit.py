"""Audit sinks for encryption events.

Auditing is fire-and-forget: a sink failure is logged but never fails the
encrypt/decrypt/migrate operation that produced the event.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orgvault.models.audit_logs import AuditAction, AuditLog, AuditOutcome, AuditSeverity

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    """One audit entry: ``{org_id, data_type, method, outcome, duration_ms}`` plus context."""

    action: AuditAction
    outcome: AuditOutcome
    org_id: Optional[str]
    data_type: Optional[str]
    method: Optional[str]
    duration_ms: float
    subject_id: Optional[str] = None
    record_id: Optional[str] = None
    severity: AuditSeverity = AuditSeverity.INFO
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("action", "outcome", "severity"):
            data[key] = getattr(self, key).value
        return data


class AuditSink(ABC):
    """Receives one event per encrypt/decrypt/migrate operation."""

    @abstractmethod
    async def emit(self, event: AuditEvent) -> None:
        """Persist or forward an event."""

    async def publish(self, event: AuditEvent) -> None:
        """Emit without letting sink failures reach the caller."""
        try:
            await self.emit(event)
        except Exception as e:
            logger.warning(
                f"Audit sink {type(self).__name__} dropped {event.action.value} event "
                f"for org {event.org_id}: {e}"
            )


class LoggingAuditSink(AuditSink):
    """Writes audit events to the application log."""

    _levels = {
        AuditSeverity.DEBUG: logging.DEBUG,
        AuditSeverity.INFO: logging.INFO,
        AuditSeverity.WARNING: logging.WARNING,
        AuditSeverity.ERROR: logging.ERROR,
        AuditSeverity.CRITICAL: logging.CRITICAL,
    }

    def __init__(self, audit_logger: Optional[logging.Logger] = None):
        self._logger = audit_logger or logging.getLogger("orgvault.audit")

    async def emit(self, event: AuditEvent) -> None:
        self._logger.log(
            self._levels[event.severity],
            f"{event.action.value} {event.outcome.value} org={event.org_id} "
            f"type={event.data_type} method={event.method} "
            f"record={event.record_id} duration={event.duration_ms:.1f}ms",
        )


class DatabaseAuditSink(AuditSink):
    """Writes audit events to the audit_logs table in a dedicated session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def emit(self, event: AuditEvent) -> None:
        async with self._session_factory() as session:
            session.add(
                AuditLog(
                    org_id=event.org_id,
                    action=event.action.value,
                    outcome=event.outcome.value,
                    severity=event.severity.value,
                    subject_id=event.subject_id,
                    data_type=event.data_type,
                    record_id=event.record_id,
                    method=event.method,
                    duration_ms=round(event.duration_ms, 3),
                    message=event.message or f"{event.action.value} {event.outcome.value}",
                    details=event.details,
                )
            )
            await session.commit()


class CompositeAuditSink(AuditSink):
    """Fans an event out to several sinks; one failing sink does not block the rest."""

    def __init__(self, *sinks: AuditSink):
        self._sinks = sinks

    async def emit(self, event: AuditEvent) -> None:
        for sink in self._sinks:
            await sink.publish(event)
