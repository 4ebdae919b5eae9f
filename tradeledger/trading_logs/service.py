"""
TradeLedger Trading Log Service
===============================
Creates trading logs and serves ownership-scoped log queries.

A submission moves through validation (before any store access), ownership
resolution with row locks, the event processor for business-logic types, and
the log insert, all in one DatabaseTransaction. Any failure rolls the whole
scope back: no log, no transaction, no balance change.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config.settings import settings
from ..database.connection import DatabaseTransaction, retry_transient
from ..database.models import EventProcessing, Platform, TradingLog
from ..errors import ConflictError, ConflictKind, TradeLedgerError, TransientError, ValidationError
from ..ledger.balance import BalanceLedger
from ..ledger.ownership import OwnershipResolver
from ..schemas import (
    CreateTradingLogRequest,
    EventProcessingResponse,
    Page,
    PurgeEventsResponse,
    TradingLogFilter,
    TradingLogResponse,
)
from ..services.query import paginate
from ..utils.helpers import json_safe, to_utc, utc_now
from ..utils.validators import check_time_range, clamp_limit
from .events import EventProcessingStore
from .processors import EventProcessor, ProcessingResult, build_processors
from .validators import BusinessInfo, TradingLogValidator, payload_summary

logger = logging.getLogger(__name__)

# Admin listings without an explicit start look back to here
ADMIN_DEFAULT_START = datetime(2020, 1, 1, tzinfo=timezone.utc)

API_METADATA = {"created_by": "api", "api_version": "v1"}


class TradingLogService:
    """Trading log creation and queries."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        validator: Optional[TradingLogValidator] = None,
        ledger: Optional[BalanceLedger] = None,
        resolver: Optional[OwnershipResolver] = None,
        events: Optional[EventProcessingStore] = None,
    ):
        self.session_maker = session_maker
        self.validator = validator or TradingLogValidator()
        self.ledger = ledger or BalanceLedger()
        self.resolver = resolver or OwnershipResolver()
        self.events = events or EventProcessingStore()
        self.processors: Dict[str, EventProcessor] = build_processors(self.ledger)

    # ========================================================================
    # Creation
    # ========================================================================

    async def create_trading_log(self, user_id: uuid.UUID,
                                 request: CreateTradingLogRequest) -> TradingLogResponse:
        """
        Validate, authorize, apply and persist one trading log.

        With ``request.event_id`` the submission is idempotent: a processed
        id returns the recorded outcome, a failed id is retried until the
        configured cap, and transient store errors are retried.

        Raises:
            ValidationError, NotFoundError, InsufficientBalanceError,
            SymbolMismatchError, ConflictError, TransientError
        """
        log_type = self.validator.validate_type(request.type)
        typed_info = self.validator.validate_info(request.info, log_type)

        if request.event_id is None:
            return await self._create(user_id, request, typed_info)

        return await retry_transient(lambda: self._create_idempotent(user_id, request, typed_info))

    async def _create_idempotent(self, user_id: uuid.UUID, request: CreateTradingLogRequest,
                                 typed_info: Optional[BusinessInfo]) -> TradingLogResponse:
        event_id = request.event_id
        try:
            return await self._create(user_id, request, typed_info)
        except TransientError:
            raise
        except ConflictError as e:
            if e.conflict_kind is not ConflictKind.DUPLICATE_EVENT:
                await self._record_failure(user_id, request, e)
                raise
            # Another delivery of the same id committed first
            async with DatabaseTransaction(self.session_maker) as tx:
                record = await self.events.get(tx.session, event_id)
                if self.events.is_processed(record) and record.user_id == user_id:
                    logger.info(f"Event {event_id} recorded concurrently, returning prior outcome")
                    return await self._replay(tx.session, user_id, record)
            raise
        except TradeLedgerError as e:
            await self._record_failure(user_id, request, e)
            raise

    async def _create(self, user_id: uuid.UUID, request: CreateTradingLogRequest,
                      typed_info: Optional[BusinessInfo]) -> TradingLogResponse:
        async with DatabaseTransaction(self.session_maker) as tx:
            session = tx.session

            if request.event_id is not None:
                record = await self.events.get(session, request.event_id, lock=True)
                if self.events.is_processed(record):
                    if record.user_id != user_id:
                        raise ConflictError(ConflictKind.DUPLICATE_EVENT)
                    logger.info(f"Event {request.event_id} already processed, returning prior outcome")
                    return await self._replay(session, user_id, record)
                if self.events.retries_exhausted(record):
                    raise ConflictError(
                        ConflictKind.DUPLICATE_EVENT,
                        f"event {request.event_id} exceeded the retry limit",
                    )

            account_ids = typed_info.account_ids if typed_info is not None else ()
            scope = await self.resolver.resolve(
                session, user_id, request.platform_id, account_ids, lock=True
            )

            if request.sub_account_id is not None and not scope.owns(request.sub_account_id):
                await self.resolver.sub_account(session, user_id, request.sub_account_id)
            if request.transaction_id is not None:
                await self.resolver.transaction(session, user_id, request.transaction_id)

            log_id = uuid.uuid4()
            result = ProcessingResult()
            if typed_info is not None:
                processor = self.processors[request.type]
                transaction_info = self._transaction_info(log_id, request, scope.platform)
                result = await processor.process(session, typed_info, scope.sub_accounts, transaction_info)
                logger.info(
                    f"Processed {request.type} event for user {user_id}: {payload_summary(typed_info)}"
                )

            info = dict(request.info or {})
            info.update(API_METADATA)
            info["trading_type"] = scope.platform.type

            now = utc_now()
            trading_log = TradingLog(
                id=log_id,
                user_id=user_id,
                platform_id=scope.platform.id,
                sub_account_id=request.sub_account_id or result.primary_account_id,
                transaction_id=request.transaction_id or result.primary_transaction_id,
                timestamp=now,
                event_time=request.event_time,
                type=request.type,
                source=request.source,
                message=request.message,
                info=json_safe(info),
                created_at=now,
                updated_at=now,
            )
            session.add(trading_log)
            await session.flush()

            outcome = self._outcome(trading_log, result)
            if request.event_id is not None:
                await self.events.record_success(
                    session, request.event_id, request.type, user_id, trading_log.id, outcome
                )

            response = self._to_response(trading_log, outcome)

        logger.info(f"Trading log {response.id} ({request.type}) created for user {user_id}")
        return response

    async def _record_failure(self, user_id: uuid.UUID, request: CreateTradingLogRequest,
                              error: TradeLedgerError) -> None:
        async with DatabaseTransaction(self.session_maker) as tx:
            await self.events.record_failure(
                tx.session, request.event_id, request.type, user_id, error.message
            )

    async def _replay(self, session: AsyncSession, user_id: uuid.UUID,
                      record: EventProcessing) -> TradingLogResponse:
        if record.trading_log_id is None:
            # The manual log was deleted after processing; its effects stay applied
            raise ConflictError(
                ConflictKind.DUPLICATE_EVENT,
                f"event {record.event_id} was already processed and its trading log was deleted",
            )
        trading_log =await self.resolver.trading_log(session, user_id, record.trading_log_id)
        return self._to_response(trading_log, record.info or {})

    @staticmethod
    def _transaction_info(log_id: uuid.UUID, request: CreateTradingLogRequest,
                          platform: Platform) -> Dict[str, Any]:
        """Trading log metadata stored on each emitted transaction."""
        return json_safe({
            "trading_log_id": log_id,
            "platform_id": platform.id,
            "type": request.type,
            "source": request.source,
            "message": request.message,
            "event_time": request.event_time,
            "info": request.info,
        })

    @staticmethod
    def _outcome(trading_log: TradingLog, result: ProcessingResult) -> Dict[str, Any]:
        return {
            "trading_log_id": str(trading_log.id),
            "processed_transactions": len(result.transactions),
            "updated_accounts": len(result.updated_accounts),
            "transaction_ids": [str(t) for t in result.transaction_ids],
        }

    @staticmethod
    def _to_response(trading_log: TradingLog, outcome: Dict[str, Any]) -> TradingLogResponse:
        response = TradingLogResponse.model_validate(trading_log)
        if outcome.get("transaction_ids"):
            info = dict(response.info)
            info["processed_transactions"] = outcome["processed_transactions"]
            info["updated_accounts"] = outcome["updated_accounts"]
            info["transaction_ids"] = outcome["transaction_ids"]
            response.info = info
        return response

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_trading_log(self, user_id: uuid.UUID, trading_log_id: uuid.UUID) -> TradingLogResponse:
        async with DatabaseTransaction(self.session_maker) as tx:
            trading_log = await self.resolver.trading_log(tx.session, user_id, trading_log_id)
            return TradingLogResponse.model_validate(trading_log)

    async def list_user_logs(self, user_id: uuid.UUID,
                             filters: Optional[TradingLogFilter] = None) -> Page[TradingLogResponse]:
        filters = filters or TradingLogFilter()
        filters.check_ranges()
        async with DatabaseTransaction(self.session_maker) as tx:
            query = select(TradingLog).where(TradingLog.user_id == user_id)
            return await self._page(tx.session, query, filters)

    async def list_sub_account_logs(self, user_id: uuid.UUID, sub_account_id: uuid.UUID,
                                    filters: Optional[TradingLogFilter] = None) -> Page[TradingLogResponse]:
        filters = filters or TradingLogFilter()
        filters.check_ranges()
        async with DatabaseTransaction(self.session_maker) as tx:
            await self.resolver.sub_account(tx.session, user_id, sub_account_id)
            query = select(TradingLog).where(
                TradingLog.user_id == user_id,
                TradingLog.sub_account_id == sub_account_id,
            )
            return await self._page(tx.session, query, filters)

    async def list_platform_logs(self, user_id: uuid.UUID, platform_id: uuid.UUID,
                                 filters: Optional[TradingLogFilter] = None) -> Page[TradingLogResponse]:
        filters = filters or TradingLogFilter()
        filters.check_ranges()
        async with DatabaseTransaction(self.session_maker) as tx:
            await self.resolver.platform(tx.session, user_id, platform_id)
            query = select(TradingLog).where(
                TradingLog.user_id == user_id,
                TradingLog.platform_id == platform_id,
            )
            return await self._page(tx.session, query, filters)

    async def list_logs_by_time_range(self, user_id: uuid.UUID, start: datetime, end: datetime,
                                      filters: Optional[TradingLogFilter] = None) -> Page[TradingLogResponse]:
        """Caller's logs between ``start`` and ``end`` inclusive."""
        check_time_range(start, end, "start_time")
        filters = (filters or TradingLogFilter()).model_copy(update={"start_date": start, "end_date": end})
        async with DatabaseTransaction(self.session_maker) as tx:
            query = select(TradingLog).where(TradingLog.user_id == user_id)
            return await self._page(tx.session, query, filters)

    async def admin_list_logs(self, filters: Optional[TradingLogFilter] = None) -> Page[TradingLogResponse]:
        """Logs across all users; the window starts at 2020-01-01 unless given."""
        filters = filters or TradingLogFilter()
        filters.check_ranges()
        if filters.start_date is None:
            filters = filters.model_copy(update={"start_date": ADMIN_DEFAULT_START})
        if filters.end_date is None:
            filters = filters.model_copy(update={"end_date": utc_now()})
        async with DatabaseTransaction(self.session_maker) as tx:
            return await self._page(tx.session, select(TradingLog), filters)

    async def delete_trading_log(self, user_id: uuid.UUID, trading_log_id: uuid.UUID) -> None:
        """Delete a manual log; bot-generated logs are kept."""
        async with DatabaseTransaction(self.session_maker) as tx:
            trading_log = await self.resolver.trading_log(tx.session, user_id, trading_log_id, lock=True)
            if trading_log.is_bot_generated:
                raise ValidationError("source", "cannot delete bot-generated trading logs", "forbidden")
            await tx.session.delete(trading_log)
        logger.info(f"Trading log {trading_log_id} deleted by user {user_id}")

    # ========================================================================
    # Event maintenance
    # ========================================================================

    async def list_failed_events(self, limit: int = 100) -> List[EventProcessingResponse]:
        """Failed external events still under the retry cap, oldest first."""
        async with DatabaseTransaction(self.session_maker) as tx:
            records = await self.events.list_failed(tx.session, clamp_limit(limit))
            return [EventProcessingResponse.model_validate(r) for r in records]

    async def purge_processed_events(self, older_than: Optional[datetime] = None) -> PurgeEventsResponse:
        """Drop processed event records past the retention window."""
        cutoff = to_utc(older_than) if older_than else utc_now() - timedelta(days=settings.events.retention_days)
        async with DatabaseTransaction(self.session_maker) as tx:
            purged = await self.events.purge_processed(tx.session, cutoff)
        return PurgeEventsResponse(purged=purged, older_than=cutoff)

    async def _page(self, session: AsyncSession, query, filters: TradingLogFilter) -> Page[TradingLogResponse]:
        if filters.type:
            query = query.where(TradingLog.type == filters.type)
        if filters.source:
            query = query.where(TradingLog.source == filters.source)
        if filters.start_date is not None:
            query = query.where(TradingLog.timestamp >= filters.start_date)
        if filters.end_date is not None:
            query = query.where(TradingLog.timestamp <= filters.end_date)

        rows, total = await paginate(
            session, query, filters.limit, filters.offset,
            TradingLog.timestamp.desc(), TradingLog.id,
        )
        return Page[TradingLogResponse].build(
            [TradingLogResponse.model_validate(row) for row in rows],
            total, filters.limit, filters.offset,
        )


__all__ = ["TradingLogService", "ADMIN_DEFAULT_START"]
