"""
COPPA Compliance Module

Keeps analytics anonymous and bounded in time.

Key Components:
- Compliance gate: field allowlists, PII pattern rejection, identifier hashing
- Audit channel for rejections and consent changes
- Facilitator consent and compliance profile management
- Retention sweeps and consent-withdrawal purge
"""

from .gate import ComplianceGate, FieldCategory, SanitizedFields
from .audit_service import ComplianceAuditService
from .consent_manager import ConsentManager, ComplianceProfile
from .retention_engine import RetentionEngine

__all__ = [
    "ComplianceGate",
    "FieldCategory",
    "SanitizedFields",
    "ComplianceAuditService",
    "ConsentManager",
    "ComplianceProfile",
    "RetentionEngine"
]
