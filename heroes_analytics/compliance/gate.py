"""
Compliance Gate

COPPA sanitization applied to every analytics field map before it is stored
or transmitted. Fields are reduced to a per-category allowlist, correlation
identifiers are replaced by salted one-way hashes, and any string that looks
like PII rejects the whole record.
"""

from typing import List, Dict, Any, Optional, Union, Callable, Mapping
from datetime import datetime
from dataclasses import dataclass, field
import hashlib
import hmac
import logging
import re
import uuid
from enum import Enum

from heroes_analytics.core.exceptions import ComplianceViolation

logger = logging.getLogger(__name__)

Scalar = Union[str, int, float, bool, None]
IndicatorValue = Union[Scalar, List[Scalar]]

COMPLIANCE_MARKER_KEY = "_coppa_compliance"
COMPLIANCE_MARKER_VALUE = "COPPA_ANONYMIZED"
ANONYMIZATION_TIMESTAMP_KEY = "_anonymized_at"
ANONYMIZATION_LEVEL_KEY = "_anonymization_level"
DATA_TYPE_KEY = "_data_type"
FULL_ANONYMIZATION = "FULL_ANONYMIZATION"


class FieldCategory(str, Enum):
    """Data categories with their own field allowlist"""
    BEHAVIORAL = "behavioral"
    GENERAL = "general"
    METADATA = "metadata"


class PIIPattern(str, Enum):
    """Pattern classes reported in violations"""
    EMAIL = "email"
    PHONE = "phone"
    SSN = "ssn"
    ADDRESS = "address"
    FREE_TEXT = "free_text"
    UNSUPPORTED_VALUE = "unsupported_value"


ALLOWED_FIELDS: Dict[FieldCategory, frozenset] = {
    FieldCategory.BEHAVIORAL: frozenset({
        "interaction_type", "behavioral_category", "engagement_level",
        "time_spent", "completion_rate", "interaction_count",
        "empathy_score", "confidence_level", "communication_quality",
        "leadership_behavior", "help_requested", "peer_interaction",
    }),
    FieldCategory.GENERAL: frozenset({
        "event_type", "event_action", "event_category",
        "lesson_category", "activity_type", "grade_level",
        "duration", "device_type", "app_version",
    }),
    FieldCategory.METADATA: frozenset({
        "timestamp", "session_context", "offline_mode",
        "device_type", "screen_size", "app_version",
        "connection_type", "lesson_category",
    }),
}

# Kept for joinability but only ever stored as salted hashes
HASHED_CORRELATION_KEYS = frozenset({"session_id", "classroom_id", "facilitator_id"})

IDENTIFYING_SUBSTRINGS = ("name", "email", "phone", "address", "personal", "contact", "birth", "ssn")
IDENTIFYING_TOKENS = frozenset({"ip", "dob", "zip"})
IDENTIFYING_ID_PATTERN = re.compile(r"(user|student|device|person|parent|child|guardian)_?id")

PII_PATTERNS = [
    (PIIPattern.EMAIL, re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    # Bare digit runs (epoch timestamps) only match with a +1 prefix
    (PIIPattern.PHONE, re.compile(
        r"(?<![\d+])(?:"
        r"\+1[\s.-]?(?:\(\d{3}\)\s?|\d{3}[\s.-]?)\d{3}[\s.-]?\d{4}"
        r"|(?:1[\s.-])?\(\d{3}\)\s?\d{3}[\s.-]?\d{4}"
        r"|(?:1[\s.-])?\d{3}[\s.-]\d{3}[\s.-]?\d{4}"
        r"|(?:1[\s.-])?\d{3}[\s.-]?\d{3}[\s.-]\d{4}"
        r")(?!\d)"
    )),
    (PIIPattern.SSN, re.compile(r"(?<!\d)\d{3}[- ]\d{2}[- ]\d{4}(?!\d)")),
    (PIIPattern.ADDRESS, re.compile(
        r"\b\d+\s+(?:[A-Za-z0-9.]+\s+){0,4}?"
        r"(?:Street|St|Avenue|Ave|Road|Rd|Lane|Ln|Drive|Dr|Court|Ct|Place|Pl|Boulevard|Blvd|Way)\b",
        re.IGNORECASE
    )),
]

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def allowed_fields(category: FieldCategory) -> frozenset:
    """Every key that may appear in a sanitized map of this category"""
    return ALLOWED_FIELDS[FieldCategory(category)] | HASHED_CORRELATION_KEYS


def normalize_key(key: str) -> str:
    """camelCase / kebab-case / spaced keys to snake_case"""
    key = _CAMEL_BOUNDARY.sub("_", str(key).strip())
    return re.sub(r"[^a-z0-9]+", "_", key.lower()).strip("_")


def is_potentially_identifying(key: str) -> bool:
    normalized = normalize_key(key)
    if any(fragment in normalized for fragment in IDENTIFYING_SUBSTRINGS):
        return True
    if IDENTIFYING_ID_PATTERN.search(normalized):
        return True
    return any(token in IDENTIFYING_TOKENS for token in normalized.split("_"))


def detect_pii(value: str) -> Optional[PIIPattern]:
    """Return the first PII pattern class found in the value, if any"""
    for pattern_type, pattern in PII_PATTERNS:
        if pattern.search(value):
            return pattern_type
    return None


def generate_anonymous_session_id() -> str:
    """Random session identifier, never derived from a real identifier"""
    return uuid.uuid4().hex


@dataclass
class SanitizedFields:
    """Result of a successful sanitize call"""
    fields: Dict[str, IndicatorValue]
    marker: Dict[str, Any]
    category: FieldCategory
    dropped_fields: List[str] = field(default_factory=list)
    flagged_fields: List[str] = field(default_factory=list)

    @property
    def flagged(self) -> bool:
        return bool(self.flagged_fields)


@dataclass
class ComplianceValidationResult:
    """Outcome of a dry-run compliance check"""
    is_compliant: bool
    violations: List[str]
    recommendations: List[str]


class ComplianceGate:
    """
    Allowlist and pattern based anonymizer for analytics field maps.

    The gate never stores or logs offending values. Violations carry only
    the field name and the pattern class.
    """

    def __init__(
        self,
        hash_salt: str,
        max_value_length: int = 100,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        if not hash_salt:
            raise ValueError("hash_salt is required")
        self.hash_salt = hash_salt
        self.max_value_length = max_value_length
        self._clock = clock

    # === SANITIZATION ===

    def sanitize(
        self,
        raw_fields: Optional[Mapping[str, Any]],
        category: Union[FieldCategory, str]
    ) -> SanitizedFields:
        """
        Reduce a raw field map to its compliant form.

        Raises:
            ComplianceViolation: a value matched a PII pattern, exceeded the
                free-text length limit, or is not a supported scalar
        """
        category = FieldCategory(category)
        allowlist = ALLOWED_FIELDS[category]

        sanitized: Dict[str, IndicatorValue] = {}
        dropped: List[str] = []
        flagged: List[str] = []

        for raw_key, value in (raw_fields or {}).items():
            key = normalize_key(raw_key)

            if key in HASHED_CORRELATION_KEYS:
                if value is not None:
                    sanitized[key] = self.hash_identifier(value)
                continue

            if key not in allowlist:
                # Dropped fields are still scanned: PII anywhere rejects the record
                self._scan_dropped(key, value)
                dropped.append(key)
                if is_potentially_identifying(key):
                    flagged.append(key)
                continue

            sanitized[key] = self._check_value(key, value)

        if dropped:
            logger.debug(f"Dropped {len(dropped)} non-allowlisted {category.value} fields")

        return SanitizedFields(
            fields=sanitized,
            marker=self.build_marker(category),
            category=category,
            dropped_fields=dropped,
            flagged_fields=flagged
        )

    def check_text(self, field_name: str, value: Optional[str]) -> Optional[str]:
        """Scan a single free-standing string (e.g. a lesson reference)"""
        if value is None:
            return None
        return self._check_value(field_name, value)

    def hash_identifier(self, value: Any) -> str:
        """Salted, fixed-length (64 hex chars) one-way digest"""
        return hmac.new(
            self.hash_salt.encode(),
            str(value).encode(),
            hashlib.sha256
        ).hexdigest()

    def build_marker(self, category: Union[FieldCategory, str]) -> Dict[str, Any]:
        return {
            COMPLIANCE_MARKER_KEY: COMPLIANCE_MARKER_VALUE,
            ANONYMIZATION_TIMESTAMP_KEY: self._clock().isoformat(),
            ANONYMIZATION_LEVEL_KEY: FULL_ANONYMIZATION,
            DATA_TYPE_KEY: FieldCategory(category).value.upper(),
        }

    # === VALIDATION ===

    def validate_compliance(
        self,
        data_to_collect: Mapping[str, Any],
        profile: Any,
        max_retention_days: int = 90
    ) -> ComplianceValidationResult:
        """
        Dry-run check reporting every problem instead of stopping at the first.

        `profile` is any object exposing consent_granted, retention_days and
        share_with_third_parties (normally a ComplianceProfile).
        """
        if not profile.consent_granted:
            return ComplianceValidationResult(
                is_compliant=False,
                violations=["No facilitator consent granted"],
                recommendations=["Obtain explicit facilitator consent before collecting data"]
            )

        violations = []
        recommendations = []

        for key, value in data_to_collect.items():
            if is_potentially_identifying(key):
                violations.append(f"Field '{key}' may contain personally identifying information")
                recommendations.append(f"Remove or anonymize field '{key}'")
            try:
                if normalize_key(key) not in HASHED_CORRELATION_KEYS:
                    self._check_value(normalize_key(key), value)
            except ComplianceViolation as e:
                violations.append(f"Value for '{key}' contains potential PII ({e.pattern})")
                recommendations.append(f"Sanitize value for field '{key}'")

        if getattr(profile, "share_with_third_parties", False):
            violations.append("Third-party data sharing is not permitted")
            recommendations.append("Disable third-party sharing")

        if profile.retention_days > max_retention_days:
            violations.append("Data retention period exceeds COPPA recommendations")
            recommendations.append(f"Reduce retention period to {max_retention_days} days or less")

        return ComplianceValidationResult(
            is_compliant=not violations,
            violations=violations,
            recommendations=recommendations
        )

    # === PRIVATE HELPER METHODS ===

    def _check_value(self, key: str, value: Any) -> IndicatorValue:
        if isinstance(value, (list, tuple)):
            return [self._check_scalar(key, item) for item in value]
        return self._check_scalar(key, value)

    def _scan_dropped(self, key: str, value: Any):
        if isinstance(value, str):
            self._check_scalar(key, value)
        elif isinstance(value, Mapping):
            for item in value.values():
                self._scan_dropped(key, item)
        elif isinstance(value, (list, tuple, set)):
            for item in value:
                self._scan_dropped(key, item)

    def _check_scalar(self, key: str, value: Any) -> Scalar:
        if value is None or isinstance(value, (bool, int, float)):
            return value

        if not isinstance(value, str):
            raise ComplianceViolation(key, PIIPattern.UNSUPPORTED_VALUE.value)

        pattern = detect_pii(value)
        if pattern is not None:
            raise ComplianceViolation(key, pattern.value)

        # Open text is the highest-risk surface
        if len(value) > self.max_value_length:
            raise ComplianceViolation(key, PIIPattern.FREE_TEXT.value)

        return value


def has_compliance_marker(marker: Optional[Mapping[str, Any]]) -> bool:
    return bool(marker) and marker.get(COMPLIANCE_MARKER_KEY) == COMPLIANCE_MARKER_VALUE
