"""
TradeLedger Event Processing Store
Idempotency records for externally identified trading events.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config.settings import settings
from ..database.models import EventProcessing, EventStatus
from ..utils.helpers import json_safe, utc_now

logger = logging.getLogger(__name__)


class EventProcessingStore:
    """
    Reads and writes EventProcessing rows.

    Success is recorded inside the atomic scope of the event itself; failures
    are recorded afterwards in a scope of their own, since the event's scope
    has been rolled back by then.
    """

    def __init__(self, max_retries: Optional[int] = None):
        self.max_retries = settings.events.max_retries if max_retries is None else max_retries

    async def get(self, session: AsyncSession, event_id: str, lock: bool = False) -> Optional[EventProcessing]:
        query = select(EventProcessing).where(EventProcessing.event_id == event_id)
        if lock:
            query = query.with_for_update()
        return (await session.execute(query)).scalar_one_or_none()

    def is_processed(self, record: Optional[EventProcessing]) -> bool:
        return record is not None and record.status == EventStatus.PROCESSED.value

    def retries_exhausted(self, record: Optional[EventProcessing]) -> bool:
        return (
            record is not None
            and record.status == EventStatus.FAILED.value
            and record.retry_count >= self.max_retries
        )

    async def record_success(
        self,
        session: AsyncSession,
        event_id: str,
        event_type: str,
        user_id: Optional[uuid.UUID],
        trading_log_id: Optional[uuid.UUID],
        outcome: Dict[str, Any],
    ) -> EventProcessing:
        """
        Mark ``event_id`` processed.

        A first-time insert racing another delivery of the same id fails on
        the unique event_id constraint when flushed.
        """
        record = await self.get(session, event_id, lock=True)
        now = utc_now()
        if record is None:
            record = EventProcessing(
                event_id=event_id,
                event_type=event_type,
                retry_count=0,
            )
            session.add(record)

        record.status = EventStatus.PROCESSED.value
        record.user_id = user_id
        record.trading_log_id = trading_log_id
        record.error_message = None
        record.info = json_safe(outcome)
        record.processed_at = now
        await session.flush()
        return record

    async def record_failure(
        self,
        session: AsyncSession,
        event_id: str,
        event_type: str,
        user_id: Optional[uuid.UUID],
        error_message: str,
    ) -> EventProcessing:
        """Store the failure and bump the retry counter."""
        record = await self.get(session, event_id, lock=True)
        if record is None:
            record = EventProcessing(
                event_id=event_id,
                event_type=event_type,
                user_id=user_id,
                retry_count=0,
                info={},
            )
            session.add(record)
        elif record.status == EventStatus.PROCESSED.value:
            return record

        record.status = EventStatus.FAILED.value
        record.retry_count = (record.retry_count or 0) + 1
        record.error_message = error_message
        record.processed_at = utc_now()
        await session.flush()

        logger.warning(
            f"Event {event_id} failed (attempt {record.retry_count}/{self.max_retries}): {error_message}"
        )
        return record

    async def list_failed(self, session: AsyncSession, limit: int = 100) -> List[EventProcessing]:
        """Failed events that may still be retried."""
        result = await session.execute(
            select(EventProcessing)
            .where(
                EventProcessing.status == EventStatus.FAILED.value,
                EventProcessing.retry_count < self.max_retries,
            )
            .order_by(EventProcessing.processed_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def purge_processed(self, session: AsyncSession, older_than: datetime) -> int:
        """Delete processed records last touched before ``older_than``."""
        result = await session.execute(
            delete(EventProcessing).where(
                EventProcessing.status == EventStatus.PROCESSED.value,
                EventProcessing.processed_at < older_than,
            )
        )
        purged = result.rowcount or 0
        if purged:
            logger.info(f"Purged {purged} processed event records older than {older_than.isoformat()}")
        return purged


__all__ = ["EventProcessingStore"]
