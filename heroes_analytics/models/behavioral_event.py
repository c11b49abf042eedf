"""
SQLAlchemy model for locally captured behavioral analytics events.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON, Index, Enum as SQLEnum
)
import enum
import uuid
from datetime import datetime
from typing import Dict, Any

from heroes_analytics.core.database import Base


class EventSyncState(str, enum.Enum):
    """Sync state of a stored event."""
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"  # attempt cap reached, terminal until released


class InteractionType(str, enum.Enum):
    """Fixed vocabulary of captured interactions."""
    LESSON_START = "lesson_start"
    LESSON_COMPLETE = "lesson_complete"
    ACTIVITY_START = "activity_start"
    ACTIVITY_COMPLETE = "activity_complete"
    SCENARIO_CHOICE = "scenario_choice"
    EMPATHY_RESPONSE = "empathy_response"
    EMOTIONAL_CHECKIN = "emotional_checkin"
    HELP_REQUESTED = "help_requested"
    PEER_INTERACTION = "peer_interaction"
    NAVIGATION = "navigation"


class BehavioralCategory(str, enum.Enum):
    """Behavioral categories an interaction is filed under."""
    ENGAGEMENT = "engagement"
    EMPATHY = "empathy"
    CONFIDENCE = "confidence"
    COMMUNICATION = "communication"
    LEADERSHIP = "leadership"
    LEARNING = "learning"
    EMOTIONAL = "emotional"


def generate_event_id() -> str:
    return str(uuid.uuid4())


class BehavioralEvent(Base):
    """Anonymized behavioral analytics event awaiting or past sync."""

    __tablename__ = "behavioral_events"

    id = Column(String(36), primary_key=True, default=generate_event_id)

    # Anonymous session context; identifiers are stored as salted hashes
    session_id = Column(String(64), nullable=False, index=True)
    classroom_id = Column(String(64), nullable=True, index=True)
    lesson_id = Column(String(64), nullable=True)
    activity_id = Column(String(64), nullable=True)

    # Classification
    interaction_type = Column(String(50), nullable=False)
    behavioral_category = Column(String(50), nullable=False)

    # Allowlisted payloads
    behavioral_indicators = Column(JSON, nullable=False, default=dict)
    event_metadata = Column(JSON, nullable=False, default=dict)
    compliance_marker = Column(JSON, nullable=False)

    # Timing
    occurred_at = Column(DateTime, nullable=False)
    recorded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Sync tracking
    sync_state = Column(SQLEnum(EventSyncState), nullable=False, default=EventSyncState.PENDING)
    sync_attempts = Column(Integer, nullable=False, default=0)
    last_sync_attempt_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    sync_error = Column(Text, nullable=True)
    requires_review = Column(Boolean, nullable=False, default=False)
    batch_id = Column(String(36), nullable=True, index=True)

    __table_args__ = (
        Index("ix_behavioral_events_pending_order", "sync_state", "recorded_at", "id"),
    )

    def to_payload(self) -> Dict[str, Any]:
        """Wire representation of the event for bulk upload."""
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "classroomId": self.classroom_id,
            "lessonId": self.lesson_id,
            "activityId": self.activity_id,
            "interactionType": self.interaction_type,
            "behavioralCategory": self.behavioral_category,
            "behavioralIndicators": dict(self.behavioral_indicators or {}),
            "metadata": dict(self.event_metadata or {}),
            "compliance": dict(self.compliance_marker or {}),
            "occurredAt": self.occurred_at.isoformat(),
            "recordedAt": self.recorded_at.isoformat(),
        }

    def __repr__(self):
        return (
            f"<BehavioralEvent(id={self.id}, type={self.interaction_type}, "
            f"state={self.sync_state}, attempts={self.sync_attempts})>"
        )
