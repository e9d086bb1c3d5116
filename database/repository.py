import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, delete, desc, func
from sqlalchemy.orm import Session

from database.models import NotificationEventRecord

logger = logging.getLogger(__name__)


class NotificationEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: str) -> Optional[NotificationEventRecord]:
        return self.db.get(NotificationEventRecord, event_id)

    def upsert(self, values: Dict[str, Any]) -> NotificationEventRecord:
        """Insert the event row or overwrite it with the latest state."""
        record = self.get_by_id(values['id'])
        if record is None:
            record = NotificationEventRecord(id=values['id'])
            self.db.add(record)

        for key, value in values.items():
            if key != 'id':
                setattr(record, key, value)

        self.db.flush()
        return record

    def find_latest_by_dedup_key(self, dedup_key: str) -> Optional[NotificationEventRecord]:
        stmt = (
            select(NotificationEventRecord)
            .where(NotificationEventRecord.dedup_key == dedup_key)
            .order_by(desc(NotificationEventRecord.created_at))
            .limit(1)
        )
        return self.db.execute(stmt).scalars().first()

    def count_by_state(self) -> Dict[str, int]:
        stmt = (
            select(NotificationEventRecord.state, func.count())
            .group_by(NotificationEventRecord.state)
        )
        return {state: count for state, count in self.db.execute(stmt).all()}

    def purge_before(self, cutoff: datetime) -> int:
        """Delete events created before ``cutoff``. Returns rows removed."""
        result = self.db.execute(
            delete(NotificationEventRecord).where(NotificationEventRecord.created_at < cutoff)
        )
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Purged {deleted} notification events created before {cutoff.isoformat()}")
        return deleted
