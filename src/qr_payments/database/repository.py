"""Repository layer for gateway persistence operations."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, Iterable

from sqlalchemy import select, update, func, case, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import InvalidTransitionError
from .models import (
    Transaction,
    ConfigItem,
    AuditEntry,
    Reversal,
    Fiscalization,
    TransactionStatus,
    SubRecordStatus,
    is_transition_allowed,
    _dump,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# Dict-valued attributes accepted by conditional updates
_JSON_COLUMNS = {
    "request_payload": "request_payload_json",
    "response_payload": "response_payload_json",
    "gateway_metadata": "metadata_json",
}


@dataclass
class TransactionFilters:
    """Listing filters for transactions."""
    gateway: Optional[str] = None
    status: Optional[str] = None
    employee_id: Optional[str] = None
    terminal_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = 1
    limit: int = 20


class TransactionRepository:
    """Single writer of transaction rows and their status."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        gateway: str,
        order_id: str,
        transaction_id: str,
        amount_minor: int,
        amount_major,
        request_payload: Dict[str, Any],
        auth_header: str,
        employee_id: str,
        terminal_id: str,
        auth_timestamp: Optional[int] = None,
        cashbox_code: Optional[str] = None,
        currency: str = "UZS",
    ) -> Transaction:
        """Insert a transaction in ``pending`` state.

        Returns:
            Created Transaction instance.
        """
        transaction = Transaction(
            gateway=gateway,
            order_id=order_id,
            transaction_id=transaction_id,
            amount_minor=amount_minor,
            amount_major=amount_major,
            currency=currency,
            cashbox_code=cashbox_code,
            auth_header=auth_header,
            auth_timestamp=auth_timestamp,
            employee_id=employee_id,
            terminal_id=terminal_id,
            status=TransactionStatus.PENDING.value,
            retry_count=0,
            timeout_occurred=False,
        )
        transaction.request_payload = request_payload

        self.session.add(transaction)
        await self.session.flush()

        logger.info(f"Created {gateway} transaction {transaction.id} for order {order_id}")
        return transaction

    async def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(Transaction.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def get_by_order_id(self, order_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(Transaction.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def order_id_exists(self, order_id: str) -> bool:
        result = await self.session.execute(
            select(Transaction.id).where(Transaction.order_id == order_id)
        )
        return result.first() is not None

    async def current_status(self, transaction_id: str) -> Optional[str]:
        """Status as stored, bypassing any loaded instance."""
        result = await self.session.execute(
            select(Transaction.status).where(Transaction.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def _conditional_update(
        self,
        transaction_id: str,
        expected: Iterable[str],
        values: Dict[str, Any],
    ) -> bool:
        expected = list(expected)
        for attr, column in _JSON_COLUMNS.items():
            if attr in values:
                values[column] = _dump(values.pop(attr))
        values.setdefault("updated_at", datetime.utcnow())
        result = await self.session.execute(
            update(Transaction)
            .where(
                and_(
                    Transaction.id == transaction_id,
                    Transaction.status.in_(expected),
                )
            )
            .values(**values)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount == 1

    async def _write_status(
        self,
        transaction_id: str,
        expected: List[str],
        new_status: str,
        values: Dict[str, Any],
    ) -> bool:
        for current in expected:
            if not is_transition_allowed(current, new_status):
                raise InvalidTransitionError(current, new_status)
        values["status"] = new_status
        return await self._conditional_update(transaction_id, expected, values)

    async def transition(
        self,
        transaction_id: str,
        expected: str,
        new_status: str,
        **values: Any,
    ) -> bool:
        """Move a transaction from ``expected`` to ``new_status``.

        The write is a conditional update (``WHERE status = :expected``), so a
        concurrent writer that already moved the row makes this a no-op.

        Args:
            transaction_id: Internal transaction id.
            expected: Status the row must currently hold.
            new_status: Target status; must be allowed by the transition table.
            **values: Extra columns to write in the same statement.

        Returns:
            True if the row was updated, False if its status was not ``expected``.

        Raises:
            InvalidTransitionError: If ``expected -> new_status`` is not allowed.
        """
        updated = await self._write_status(transaction_id, [expected], new_status, values)
        if updated:
            logger.info(f"Transaction {transaction_id}: {expected} -> {new_status}")
        else:
            logger.warning(
                f"Transaction {transaction_id} was not in {expected}; "
                f"{new_status} not applied"
            )
        return updated

    async def mark_processing(
        self,
        transaction_id: str,
        retry_count: int,
        **values: Any,
    ) -> bool:
        """Record the start of a gateway attempt.

        ``pending -> processing`` on the first attempt; later attempts only
        refresh ``retry_count`` (and the re-signed header passed in ``values``)
        on a row that is already ``processing``, without a status write.
        """
        values["retry_count"] = retry_count
        if retry_count == 0:
            return await self.transition(
                transaction_id,
                TransactionStatus.PENDING.value,
                TransactionStatus.PROCESSING.value,
                **values,
            )
        return await self._conditional_update(
            transaction_id, [TransactionStatus.PROCESSING.value], values
        )

    async def fail_unfinished(
        self,
        transaction_id: str,
        error_code: Optional[int],
        error_message: str,
        **values: Any,
    ) -> bool:
        """Mark a ``pending`` or ``processing`` transaction as ``failed``."""
        values.update(
            error_code=error_code,
            error_message=error_message,
            completed_at=datetime.utcnow(),
        )
        return await self._write_status(
            transaction_id,
            [TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value],
            TransactionStatus.FAILED.value,
            values,
        )

    async def update_metadata(self, transaction: Transaction, extra: Dict[str, Any]) -> Transaction:
        """Merge ``extra`` into the transaction's gateway metadata."""
        merged = dict(transaction.gateway_metadata or {})
        merged.update(extra)
        transaction.gateway_metadata = merged
        transaction.updated_at = datetime.utcnow()
        await self.session.flush()
        return transaction

    async def link_pos_sale(self, transaction_id: str, pos_sale_id: str) -> bool:
        """Attach a POS sale id. Only ``success`` rows can be linked."""
        return await self._conditional_update(
            transaction_id,
            [TransactionStatus.SUCCESS.value],
            {"pos_sale_id": pos_sale_id},
        )

    def _filter_conditions(self, filters: TransactionFilters) -> List[Any]:
        conditions = []
        if filters.gateway:
            conditions.append(Transaction.gateway == filters.gateway)
        if filters.status:
            conditions.append(Transaction.status == filters.status)
        if filters.employee_id:
            conditions.append(Transaction.employee_id == filters.employee_id)
        if filters.terminal_id:
            conditions.append(Transaction.terminal_id == filters.terminal_id)
        if filters.start_date:
            conditions.append(Transaction.initiated_at >= filters.start_date)
        if filters.end_date:
            conditions.append(Transaction.initiated_at <= filters.end_date)
        return conditions

    async def list(self, filters: TransactionFilters) -> Tuple[List[Transaction], int]:
        """List transactions, newest first.

        Returns:
            Tuple of (page of transactions, total matching count).
        """
        limit = max(1, min(filters.limit, MAX_PAGE_SIZE))
        page = max(1, filters.page)
        conditions = self._filter_conditions(filters)

        query = select(Transaction)
        count_query = select(func.count()).select_from(Transaction)
        if conditions:
            query = query.where(and_(*conditions))
            count_query = count_query.where(and_(*conditions))

        result = await self.session.execute(
            query.order_by(Transaction.initiated_at.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        total = (await self.session.execute(count_query)).scalar_one()
        return list(result.scalars().all()), total

    async def stats(self, gateway: str, since: datetime) -> Dict[str, Any]:
        """Aggregate counts and amounts for transactions initiated after ``since``."""
        def count_status(status: TransactionStatus):
            return func.sum(case((Transaction.status == status.value, 1), else_=0))

        row = (await self.session.execute(
            select(
                func.count(Transaction.id),
                count_status(TransactionStatus.SUCCESS),
                count_status(TransactionStatus.FAILED),
                count_status(TransactionStatus.PENDING),
                count_status(TransactionStatus.REVERSED),
                func.sum(case(
                    (Transaction.status == TransactionStatus.SUCCESS.value, Transaction.amount_minor),
                    else_=0,
                )),
            ).where(
                and_(Transaction.gateway == gateway, Transaction.initiated_at >= since)
            )
        )).one()
        total, succeeded, failed, pending, reversed_, amount_minor = (v or 0 for v in row)

        completed = await self.session.execute(
            select(Transaction.initiated_at, Transaction.completed_at).where(
                and_(
                    Transaction.gateway == gateway,
                    Transaction.initiated_at >= since,
                    Transaction.completed_at.is_not(None),
                )
            )
        )
        durations = [
            (done - started).total_seconds() * 1000 for started, done in completed.all()
        ]

        errors = await self.session.execute(
            select(Transaction.error_code, Transaction.error_message, func.count().label("count"))
            .where(
                and_(
                    Transaction.gateway == gateway,
                    Transaction.initiated_at >= since,
                    Transaction.status == TransactionStatus.FAILED.value,
                    Transaction.error_code.is_not(None),
                    Transaction.error_code != 0,
                )
            )
            .group_by(Transaction.error_code, Transaction.error_message)
            .order_by(func.count().desc())
            .limit(5)
        )

        return {
            "total_transactions": total,
            "successful_transactions": succeeded,
            "failed_transactions": failed,
            "pending_transactions": pending,
            "reversed_transactions": reversed_,
            "total_amount_minor": amount_minor,
            "avg_processing_time_ms": round(sum(durations) / len(durations)) if durations else 0,
            "success_rate": round(succeeded * 100 / total) if total else 0,
            "common_errors": [
                {"error_code": code, "error_message": message, "count": count}
                for code, message, count in errors.all()
            ],
        }


class ConfigRepository:
    """Repository for ConfigItem rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, gateway: str, key: str) -> Optional[ConfigItem]:
        result = await self.session.execute(
            select(ConfigItem).where(
                and_(
                    ConfigItem.gateway == gateway,
                    ConfigItem.key == key,
                    ConfigItem.is_active.is_(True),
                )
            )
        )
        return result.scalar_one_or_none()

    async def list(self, gateway: str, active_only: bool = False) -> List[ConfigItem]:
        query = select(ConfigItem).where(ConfigItem.gateway == gateway)
        if active_only:
            query = query.where(ConfigItem.is_active.is_(True))
        result = await self.session.execute(query.order_by(ConfigItem.key))
        return list(result.scalars().all())

    async def upsert(
        self,
        gateway: str,
        key: str,
        value: str,
        description: Optional[str] = None,
        is_encrypted: bool = False,
    ) -> ConfigItem:
        """Insert or update a config item; a None description keeps the old one."""
        result = await self.session.execute(
            select(ConfigItem).where(
                and_(ConfigItem.gateway == gateway, ConfigItem.key == key)
            )
        )
        item = result.scalar_one_or_none()
        if item is None:
            item = ConfigItem(
                gateway=gateway,
                key=key,
                value=value,
                description=description,
                is_encrypted=is_encrypted,
                is_active=True,
            )
            self.session.add(item)
        else:
            item.value = value
            if description is not None:
                item.description = description
            item.is_encrypted = is_encrypted
            item.is_active = True
            item.updated_at = datetime.utcnow()

        await self.session.flush()
        return item

    async def last_updated(self, gateway: str) -> Optional[datetime]:
        result = await self.session.execute(
            select(func.max(ConfigItem.updated_at)).where(
                and_(ConfigItem.gateway == gateway, ConfigItem.is_active.is_(True))
            )
        )
        return result.scalar_one_or_none()


class AuditRepository:
    """Append-only access to the audit log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        gateway: str,
        action: str,
        transaction_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        employee_id: Optional[str] = None,
        terminal_id: Optional[str] = None,
        http_method: Optional[str] = None,
        endpoint: Optional[str] = None,
        response_status: Optional[int] = None,
        response_time_ms: Optional[int] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            gateway=gateway,
            action=action,
            transaction_id=transaction_id,
            employee_id=employee_id,
            terminal_id=terminal_id,
            http_method=http_method,
            endpoint=endpoint,
            response_status=response_status,
            response_time_ms=response_time_ms,
        )
        entry.details = details
        self.session.add(entry)
        await self.session.flush()

        logger.debug(f"Audit {gateway}:{action} for transaction {transaction_id}")
        return entry

    async def list_for_transaction(self, transaction_id: str) -> List[AuditEntry]:
        result = await self.session.execute(
            select(AuditEntry)
            .where(AuditEntry.transaction_id == transaction_id)
            .order_by(AuditEntry.created_at)
        )
        return list(result.scalars().all())

    async def list_by_action(
        self,
        action: str,
        gateway: Optional[str] = None,
    ) -> List[AuditEntry]:
        query = select(AuditEntry).where(AuditEntry.action == action)
        if gateway:
            query = query.where(AuditEntry.gateway == gateway)
        result = await self.session.execute(query.order_by(AuditEntry.created_at))
        return list(result.scalars().all())


class _SubRecordRepository:
    """Shared logic for records that hang 0..1 off a transaction."""

    model = None

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_transaction_id(self, transaction_id: str):
        result = await self.session.execute(
            select(self.model).where(self.model.transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def complete(
        self,
        record,
        response_payload: Optional[Dict[str, Any]],
        error_code: Optional[int],
        error_message: Optional[str],
        succeeded: bool,
    ):
        record.response_payload = response_payload
        record.error_code = error_code
        record.error_message = error_message
        record.status = (
            SubRecordStatus.SUCCESS.value if succeeded else SubRecordStatus.FAILED.value
        )
        record.completed_at = datetime.utcnow()
        await self.session.flush()
        return record

    async def fail_pending(self, record_id: str, error_message: str) -> bool:
        """Close a record an interrupted call left ``pending``.

        Returns:
            True if the record was still pending and is now ``failed``.
        """
        result = await self.session.execute(
            update(self.model)
            .where(
                and_(
                    self.model.id == record_id,
                    self.model.status == SubRecordStatus.PENDING.value,
                )
            )
            .values(
                status=SubRecordStatus.FAILED.value,
                error_message=error_message,
                completed_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount == 1

    def _restart(self, record, request_payload: Dict[str, Any]) -> None:
        record.request_payload_json = _dump(request_payload)
        record.response_payload_json = None
        record.status = SubRecordStatus.PENDING.value
        record.error_code = None
        record.error_message = None
        record.completed_at = None
        record.attempts = (record.attempts or 0) + 1


class ReversalRepository(_SubRecordRepository):
    """Repository for Reversal records."""

    model = Reversal

    async def start(
        self,
        transaction: Transaction,
        request_payload: Dict[str, Any],
        reason: str,
        requested_by: str,
    ) -> Reversal:
        """Create the reversal record, or restart a previously failed one."""
        reversal = await self.get_by_transaction_id(transaction.id)
        if reversal is None:
            reversal = Reversal(
                transaction_id=transaction.id,
                original_order_id=transaction.order_id,
                gateway_payment_id=transaction.gateway_payment_id,
                reason=reason,
                requested_by=requested_by,
                status=SubRecordStatus.PENDING.value,
                attempts=1,
            )
            reversal.request_payload = request_payload
            self.session.add(reversal)
        else:
            self._restart(reversal, request_payload)
            reversal.reason = reason
            reversal.requested_by = requested_by
            reversal.requested_at = datetime.utcnow()

        await self.session.flush()
        return reversal


class FiscalizationRepository(_SubRecordRepository):
    """Repository for Fiscalization records."""

    model = Fiscalization

    async def start(
        self,
        transaction: Transaction,
        request_payload: Dict[str, Any],
        fiscal_url: str,
    ) -> Fiscalization:
        """Create the fiscalization record, or restart a previously failed one."""
        fiscalization = await self.get_by_transaction_id(transaction.id)
        if fiscalization is None:
            fiscalization = Fiscalization(
                transaction_id=transaction.id,
                gateway_payment_id=transaction.gateway_payment_id,
                fiscal_url=fiscal_url,
                status=SubRecordStatus.PENDING.value,
                attempts=1,
            )
            fiscalization.request_payload = request_payload
            self.session.add(fiscalization)
        else:
            self._restart(fiscalization, request_payload)
            fiscalization.fiscal_url = fiscal_url
            fiscalization.submitted_at = datetime.utcnow()

        await self.session.flush()
        return fiscalization
