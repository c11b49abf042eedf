"""
SQLAlchemy model for analytics sync batches.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Enum as SQLEnum
import enum
from datetime import datetime

from heroes_analytics.core.database import Base


class BatchStatus(str, enum.Enum):
    """Lifecycle of a sync batch."""
    OPEN = "open"
    IN_FLIGHT = "in_flight"
    COMMITTED = "committed"
    PARTIALLY_FAILED = "partially_failed"


TERMINAL_BATCH_STATUSES = (BatchStatus.COMMITTED, BatchStatus.PARTIALLY_FAILED)


class SyncBatch(Base):
    """A bounded, ordered group of events transmitted in one upload."""

    __tablename__ = "sync_batches"

    batch_id = Column(String(36), primary_key=True)

    # Membership is fixed at creation, in capture order
    event_ids = Column(JSON, nullable=False)
    event_count = Column(Integer, nullable=False, default=0)

    status = Column(SQLEnum(BatchStatus), nullable=False, default=BatchStatus.OPEN, index=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    attempt_count = Column(Integer, nullable=False, default=0)
    accepted_count = Column(Integer, nullable=False, default=0)
    rejected_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BATCH_STATUSES

    def __repr__(self):
        return f"<SyncBatch(batch_id={self.batch_id}, status={self.status}, events={self.event_count})>"
