"""
Compliance Audit Service

Audit channel for COPPA compliance events: PII rejections, flagged
identifying fields, consent changes and retention sweeps. Entries are
persisted to the compliance audit table and mirrored to the
`compliance_audit` logger. Only field names and pattern classes are
recorded, never the offending values.
"""

from typing import List, Dict, Any, Optional
from datetime import datetime
from enum import Enum
import logging

from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession

from heroes_analytics.core.exceptions import ComplianceViolation
from heroes_analytics.core.logging import get_audit_logger
from heroes_analytics.models.compliance import ComplianceAuditLog

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()


class AuditSeverity(str, Enum):
    """Severity levels for audit events"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEventType(str, Enum):
    PII_DETECTED = "pii_detected"
    IDENTIFYING_FIELD_FLAGGED = "identifying_field_flagged"
    CONSENT_GRANTED = "consent_granted"
    CONSENT_WITHDRAWN = "consent_withdrawn"
    PROFILE_UPDATED = "profile_updated"
    RETENTION_SWEEP = "retention_sweep"
    RETENTION_CAP_EXCEEDED = "retention_cap_exceeded"
    SYNC_REJECTED = "sync_rejected"


_LOG_LEVELS = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARNING: logging.WARNING,
    AuditSeverity.ERROR: logging.ERROR,
    AuditSeverity.CRITICAL: logging.CRITICAL,
}


class ComplianceAuditService:
    """
    Writes compliance audit entries through the event store's transaction
    boundary so audit writes never race with capture or sync.
    """

    def __init__(self, store):
        self.store = store

    # === AUDIT EVENT LOGGING ===

    async def log_audit_event(
        self,
        event_type: AuditEventType,
        event_category: str,
        description: str,
        severity_level: AuditSeverity = AuditSeverity.INFO,
        technical_details: Dict[str, Any] = None,
        requires_action: bool = False,
        session: Optional[AsyncSession] = None
    ) -> ComplianceAuditLog:
        """
        Log an audit event.

        Pass `session` when already inside a store transaction; otherwise a
        new transaction is opened.
        """
        audit_log = ComplianceAuditLog(
            event_type=AuditEventType(event_type).value,
            event_category=event_category,
            severity_level=AuditSeverity(severity_level).value,
            description=description,
            technical_details=technical_details,
            requires_action=requires_action,
            created_at=datetime.utcnow()
        )

        if session is not None:
            session.add(audit_log)
        else:
            async with self.store.transaction() as own_session:
                own_session.add(audit_log)

        audit_logger.log(
            _LOG_LEVELS[AuditSeverity(severity_level)],
            f"[{audit_log.event_category}] {audit_log.event_type}: {description}"
            + (f" {technical_details}" if technical_details else "")
        )
        return audit_log

    async def log_violation(self, violation: ComplianceViolation, context: Dict[str, Any] = None):
        """Record a rejected event. Only field name and pattern class are kept."""
        details = {"field": violation.field, "pattern": violation.pattern}
        if context:
            details.update(context)

        return await self.log_audit_event(
            event_type=AuditEventType.PII_DETECTED,
            event_category="privacy",
            description=f"Event rejected: field '{violation.field}' matched {violation.pattern}",
            severity_level=AuditSeverity.WARNING,
            technical_details=details
        )

    async def log_flagged_fields(self, flagged_fields: List[str], category: str):
        return await self.log_audit_event(
            event_type=AuditEventType.IDENTIFYING_FIELD_FLAGGED,
            event_category="privacy",
            description=f"Dropped {len(flagged_fields)} potentially identifying {category} field(s)",
            severity_level=AuditSeverity.WARNING,
            technical_details={"fields": sorted(flagged_fields), "category": category}
        )

    # === QUERIES ===

    async def list_events(
        self,
        event_type: Optional[AuditEventType] = None,
        limit: int = 100
    ) -> List[ComplianceAuditLog]:
        async with self.store.read_session() as session:
            query = select(ComplianceAuditLog).order_by(
                desc(ComplianceAuditLog.created_at), desc(ComplianceAuditLog.id)
            )
            if event_type is not None:
                query = query.where(ComplianceAuditLog.event_type == AuditEventType(event_type).value)
            result = await session.execute(query.limit(limit))
            return list(result.scalars().all())

    async def count_violations(self, since: Optional[datetime] = None) -> int:
        async with self.store.read_session() as session:
            query = select(func.count(ComplianceAuditLog.id)).where(
                ComplianceAuditLog.event_type == AuditEventType.PII_DETECTED.value
            )
            if since is not None:
                query = query.where(ComplianceAuditLog.created_at >= since)
            result = await session.execute(query)
            return result.scalar_one()
