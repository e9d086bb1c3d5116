from sqlalchemy import Column, Integer, Text, DateTime, JSON, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class NotificationEventRecord(Base):
    """
    Audit log of notification events.

    One row per admitted notification; the row is rewritten as the event
    moves from pending to sent or failed. The deduplication gate reads the
    latest row for a dedup key when its in-memory index has no entry.
    """
    __tablename__ = 'notification_events'

    id = Column(Text, primary_key=True)  # notif_<hex>

    # Identity - hash of event type + entity + recipient
    dedup_key = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)
    entity_id = Column(Text, nullable=False)
    recipient_id = Column(Text, nullable=False, index=True)

    state = Column(Text, nullable=False, default='pending')  # pending|sent|failed
    priority = Column(Text, nullable=False, default='normal')
    source = Column(Text, nullable=False, default='job_events')

    # Content as generated at admission time
    title = Column(Text, nullable=False, default='')
    body = Column(Text, nullable=False, default='')
    data = Column(JSON, default=dict)
    # 'metadata' is reserved on declarative classes
    event_metadata = Column('metadata', JSON, default=dict)

    error_message = Column(Text, nullable=True)
    delivery_attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # Latest event per dedup key
        Index('idx_notification_events_dedup', 'dedup_key', 'created_at'),
        Index('idx_notification_events_created', 'created_at'),
    )
