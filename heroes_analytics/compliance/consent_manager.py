"""
Consent Manager

Facilitator-controlled COPPA compliance profile: consent, retention window
and collection switches. The profile is persisted as a single row so it
survives restarts and is handed explicitly to capture, sync and retention.
"""

from typing import Dict, Any, Optional
from datetime import datetime
from dataclasses import dataclass, field, replace, asdict
import logging
import secrets

from sqlalchemy.ext.asyncio import AsyncSession

from heroes_analytics.core.config import Settings, settings as default_settings
from heroes_analytics.compliance.audit_service import (
    ComplianceAuditService, AuditEventType, AuditSeverity
)
from heroes_analytics.compliance.gate import ComplianceGate, FULL_ANONYMIZATION
from heroes_analytics.models.compliance import ComplianceProfileRecord

logger = logging.getLogger(__name__)

PROFILE_ROW_ID = 1

UPDATABLE_FIELDS = ("retention_days", "educational_purpose_only", "behavioral_analytics_enabled")


def generate_hash_salt() -> str:
    return secrets.token_hex(32)


@dataclass
class ComplianceProfile:
    """Snapshot of the device's compliance settings"""
    consent_granted: bool = False
    anonymous_only: bool = True
    retention_days: int = 90
    educational_purpose_only: bool = True
    behavioral_analytics_enabled: bool = False
    share_with_third_parties: bool = False
    consent_timestamp: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    hash_salt: str = field(default_factory=generate_hash_salt, repr=False)

    @property
    def collection_allowed(self) -> bool:
        return self.consent_granted and self.behavioral_analytics_enabled

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("hash_salt")
        return data


@dataclass
class ComplianceStatus:
    is_compliant: bool
    consent_level: str
    anonymization_level: str
    data_retention_days: int
    compliance_score: float


class ConsentManager:
    """
    Owns the ComplianceProfile and its persisted row.

    Writes go through the event store's transaction boundary, which is also
    what makes consent withdrawal atomic with the data purge.
    """

    def __init__(
        self,
        store,
        audit_service: ComplianceAuditService,
        config: Settings = None
    ):
        self.store = store
        self.audit_service = audit_service
        self.config = config or default_settings
        self._profile = ComplianceProfile(retention_days=self.config.DEFAULT_RETENTION_DAYS)
        self._gate: Optional[ComplianceGate] = None

    @property
    def profile(self) -> ComplianceProfile:
        return self._profile

    @property
    def gate(self) -> ComplianceGate:
        """Compliance gate keyed to the current hash salt"""
        if self._gate is None or self._gate.hash_salt != self._profile.hash_salt:
            self._gate = ComplianceGate(
                self._profile.hash_salt,
                max_value_length=self.config.MAX_INDICATOR_VALUE_LENGTH
            )
        return self._gate

    # === PROFILE LIFECYCLE ===

    async def load(self) -> ComplianceProfile:
        """Load the persisted profile, creating a revoked default on first run."""
        async with self.store.transaction() as session:
            record = await session.get(ComplianceProfileRecord, PROFILE_ROW_ID)
            if record is None:
                record = ComplianceProfileRecord(id=PROFILE_ROW_ID)
                self._apply_to_record(record, self._profile)
                session.add(record)
                logger.info("Created default compliance profile (no consent)")
            self._profile = self._from_record(record)

        return self._profile

    async def initialize(
        self,
        facilitator_consent: bool,
        retention_days: Optional[int] = None,
        educational_purpose_only: bool = True
    ) -> ComplianceProfile:
        """
        First-run setup from the facilitator's consent choice. Declining
        consent behaves like a withdrawal and clears any stored data.
        """
        if not facilitator_consent:
            await self.withdraw_consent()
            return self._profile

        return await self.grant_consent(
            retention_days=retention_days,
            educational_purpose_only=educational_purpose_only
        )

    async def grant_consent(
        self,
        retention_days: Optional[int] = None,
        educational_purpose_only: bool = True
    ) -> ComplianceProfile:
        retention_days = self._validate_retention_days(
            retention_days if retention_days is not None else self._profile.retention_days
        )
        now = datetime.utcnow()

        new_profile = replace(
            self._profile,
            consent_granted=True,
            behavioral_analytics_enabled=True,
            educational_purpose_only=educational_purpose_only,
            retention_days=retention_days,
            consent_timestamp=now,
            updated_at=now
        )

        async with self.store.transaction() as session:
            await self._save(session, new_profile)
            await self.audit_service.log_audit_event(
                event_type=AuditEventType.CONSENT_GRANTED,
                event_category="consent",
                description="Facilitator consent granted for anonymous analytics",
                technical_details={"retention_days": retention_days},
                session=session
            )
            self._profile = new_profile

        await self._warn_if_retention_exceeds_cap(retention_days)
        logger.info(f"Analytics consent granted (retention {retention_days} days)")
        return self._profile

    async def withdraw_consent(self) -> Dict[str, int]:
        """
        Delete every event and batch, revoke consent and rotate the hash salt.

        The profile is revoked inside the same locked transaction as the
        purge, so no capture write can slip in between.
        """
        now = datetime.utcnow()
        revoked = replace(
            self._profile,
            consent_granted=False,
            behavioral_analytics_enabled=False,
            consent_timestamp=None,
            updated_at=now,
            hash_salt=generate_hash_salt()
        )

        async with self.store.transaction() as session:
            deleted = await self.store.delete_all_in(session)
            await self._save(session, revoked)
            await self.audit_service.log_audit_event(
                event_type=AuditEventType.CONSENT_WITHDRAWN,
                event_category="consent",
                description=f"Consent withdrawn; cleared {deleted} analytics events",
                severity_level=AuditSeverity.WARNING,
                technical_details={"events_deleted": deleted},
                session=session
            )
            self._profile = revoked

        logger.warning(f"Analytics consent withdrawn, {deleted} events deleted")
        return {"events_deleted": deleted}

    async def update_profile(self, **partial) -> ComplianceProfile:
        """
        Apply a partial settings update from the facilitator.

        Raises:
            ValueError: unknown field, consent change (use grant/withdraw),
                disabling anonymization, enabling third-party sharing, or a
                retention window below one day
        """
        if "consent_granted" in partial:
            raise ValueError("Use grant_consent() or withdraw_consent() to change consent")
        if partial.get("anonymous_only") is False:
            raise ValueError("Anonymous-only tracking cannot be disabled")
        if partial.get("share_with_third_parties"):
            raise ValueError("Third-party sharing is not permitted")

        partial.pop("anonymous_only", None)
        partial.pop("share_with_third_parties", None)

        unknown = set(partial) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown compliance profile fields: {', '.join(sorted(unknown))}")

        if "retention_days" in partial:
            partial["retention_days"] = self._validate_retention_days(partial["retention_days"])
        if partial.get("behavioral_analytics_enabled") and not self._profile.consent_granted:
            raise ValueError("Analytics cannot be enabled without facilitator consent")

        updated = replace(self._profile, updated_at=datetime.utcnow(), **partial)

        async with self.store.transaction() as session:
            await self._save(session, updated)
            await self.audit_service.log_audit_event(
                event_type=AuditEventType.PROFILE_UPDATED,
                event_category="consent",
                description="Compliance profile updated",
                technical_details={"fields": sorted(partial)},
                session=session
            )
            self._profile = updated

        if "retention_days" in partial:
            await self._warn_if_retention_exceeds_cap(partial["retention_days"])

        return self._profile

    # === STATUS ===

    def get_compliance_status(self) -> ComplianceStatus:
        profile = self._profile
        return ComplianceStatus(
            is_compliant=(
                profile.consent_granted
                and profile.anonymous_only
                and not profile.share_with_third_parties
            ),
            consent_level="FACILITATOR_GRANTED" if profile.consent_granted else "NO_CONSENT",
            anonymization_level=FULL_ANONYMIZATION if profile.anonymous_only else "NONE",
            data_retention_days=profile.retention_days,
            compliance_score=self._calculate_compliance_score(profile)
        )

    # === PRIVATE HELPER METHODS ===

    def _calculate_compliance_score(self, profile: ComplianceProfile) -> float:
        """Weighted score on a 0-100 scale"""
        score = 0
        if profile.consent_granted:
            score += 3
        if profile.anonymous_only:
            score += 2
        if not profile.share_with_third_parties:
            score += 2
        if profile.retention_days <= self.config.MAX_RETENTION_DAYS:
            score += 2
        if profile.educational_purpose_only:
            score += 1
        return score * 10.0

    def _validate_retention_days(self, retention_days: int) -> int:
        retention_days = int(retention_days)
        if retention_days < 1:
            raise ValueError("retention_days must be at least 1")
        return retention_days

    async def _warn_if_retention_exceeds_cap(self, retention_days: int):
        if retention_days <= self.config.MAX_RETENTION_DAYS:
            return
        await self.audit_service.log_audit_event(
            event_type=AuditEventType.RETENTION_CAP_EXCEEDED,
            event_category="retention",
            description=(
                f"Retention window of {retention_days} days exceeds the "
                f"{self.config.MAX_RETENTION_DAYS}-day COPPA recommendation"
            ),
            severity_level=AuditSeverity.WARNING,
            technical_details={
                "retention_days": retention_days,
                "max_retention_days": self.config.MAX_RETENTION_DAYS
            },
            requires_action=True
        )

    async def _save(self, session: AsyncSession, profile: ComplianceProfile):
        record = await session.get(ComplianceProfileRecord, PROFILE_ROW_ID)
        if record is None:
            record = ComplianceProfileRecord(id=PROFILE_ROW_ID)
            session.add(record)
        self._apply_to_record(record, profile)

    @staticmethod
    def _apply_to_record(record: ComplianceProfileRecord, profile: ComplianceProfile):
        record.consent_granted = profile.consent_granted
        record.anonymous_only = profile.anonymous_only
        record.retention_days = profile.retention_days
        record.educational_purpose_only = profile.educational_purpose_only
        record.behavioral_analytics_enabled = profile.behavioral_analytics_enabled
        record.share_with_third_parties = profile.share_with_third_parties
        record.consent_timestamp = profile.consent_timestamp
        record.updated_at = profile.updated_at
        record.hash_salt = profile.hash_salt

    @staticmethod
    def _from_record(record: ComplianceProfileRecord) -> ComplianceProfile:
        return ComplianceProfile(
            consent_granted=record.consent_granted,
            anonymous_only=record.anonymous_only,
            retention_days=record.retention_days,
            educational_purpose_only=record.educational_purpose_only,
            behavioral_analytics_enabled=record.behavioral_analytics_enabled,
            share_with_third_parties=record.share_with_third_parties,
            consent_timestamp=record.consent_timestamp,
            updated_at=record.updated_at,
            hash_salt=record.hash_salt
        )
