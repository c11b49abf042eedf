"""
COPPA Compliance Data Models

- Facilitator-controlled compliance profile (consent, retention)
- Compliance audit trail
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON
from datetime import datetime

from heroes_analytics.core.database import Base


class ComplianceProfileRecord(Base):
    """Persisted compliance profile; a single row per device"""
    __tablename__ = "compliance_profiles"

    id = Column(Integer, primary_key=True)

    consent_granted = Column(Boolean, nullable=False, default=False)
    anonymous_only = Column(Boolean, nullable=False, default=True)
    educational_purpose_only = Column(Boolean, nullable=False, default=True)
    behavioral_analytics_enabled = Column(Boolean, nullable=False, default=False)
    share_with_third_parties = Column(Boolean, nullable=False, default=False)
    retention_days = Column(Integer, nullable=False, default=90)

    # Salt for one-way hashing of correlation identifiers; rotated on withdrawal
    hash_salt = Column(String(64), nullable=False)

    consent_timestamp = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True, onupdate=datetime.utcnow)


class ComplianceAuditLog(Base):
    """Compliance audit trail entry"""
    __tablename__ = "compliance_audit_logs"

    id = Column(Integer, primary_key=True, index=True)

    event_type = Column(String(100), nullable=False)  # "pii_detected", "consent_withdrawn", "retention_sweep"
    event_category = Column(String(50), nullable=False)  # "privacy", "consent", "retention", "sync"
    severity_level = Column(String(20), default="info")  # "info", "warning", "error", "critical"

    description = Column(Text, nullable=False)
    technical_details = Column(JSON, nullable=True)  # field names and pattern classes only

    requires_action = Column(Boolean, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
