"""Repository for ledger operations.

A small capability set (get, get_by_fields, fetch, fetch_by_fields_from_date,
create, update, find_or_create, update_or_create, transaction) shared by every
entity, plus the handful of treasury-specific queries the loops need.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Iterable, Optional, Sequence, Type, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from walletadapter.errors import NotFoundError, ServerError
from walletadapter.ledger.models import (
    Base,
    BatchRequest,
    BatchStatus,
    ChainTransaction,
    FloatManagerRun,
    Transaction,
    TransactionQueue,
    TransactionStatus,
    TransactionTag,
    UserAsset,
    utcnow,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Transactional scope
    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator["LedgerRepository", None]:
        """Run a group of writes atomically.

        Commits when the block exits cleanly, rolls back and re-raises otherwise.
        Store failures are re-raised as ServerError.
        """
        try:
            yield self
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise ServerError(f"Ledger write failed: {e}") from e
        except Exception:
            await self.session.rollback()
            raise

    # Generic operations
    async def get(self, model: Type[ModelT], entity_id: uuid.UUID) -> ModelT:
        """Get a row by primary key. Raises NotFoundError."""
        entity = await self.session.get(model, entity_id)
        if entity is None:
            raise NotFoundError(f"{model.__name__} {entity_id} not found")
        return entity

    async def find_by_fields(self, model: Type[ModelT], **fields: Any) -> Optional[ModelT]:
        """Get the first row matching all fields, or None."""
        stmt = select(model).filter_by(**fields).order_by(model.created_at).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_fields(self, model: Type[ModelT], **fields: Any) -> ModelT:
        """Get the first row matching all fields. Raises NotFoundError."""
        entity = await self.find_by_fields(model, **fields)
        if entity is None:
            raise NotFoundError(f"{model.__name__} matching {fields} not found")
        return entity

    async def fetch(self, model: Type[ModelT], **fields: Any) -> list[ModelT]:
        """Get all rows matching the fields, oldest first."""
        stmt = select(model).filter_by(**fields).order_by(model.created_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def fetch_by_fields_from_date(
        self,
        model: Type[ModelT],
        since: Optional[datetime],
        **fields: Any,
    ) -> list[ModelT]:
        """Get rows matching the fields created strictly after ``since``.

        With no ``since`` every row created strictly before now is returned.
        Results are ordered by created_at ascending.
        """
        stmt = select(model).filter_by(**fields)
        if since is None:
            stmt = stmt.where(model.created_at < utcnow())
        else:
            stmt = stmt.where(model.created_at > since)
        result = await self.session.execute(stmt.order_by(model.created_at))
        return list(result.scalars().all())

    async def create(self, entity: ModelT) -> ModelT:
        """Add a new row."""
        self.session.add(entity)
        await self.session.flush()
        return entity

    async def update(self, entity: ModelT, **values: Any) -> ModelT:
        """Set attributes on a row and flush."""
        for key, value in values.items():
            setattr(entity, key, value)
        await self.session.flush()
        return entity

    async def find_or_create(
        self,
        model: Type[ModelT],
        defaults: Optional[dict] = None,
        **fields: Any,
    ) -> ModelT:
        """Get the row matching the fields, creating it when missing."""
        entity = await self.find_by_fields(model, **fields)
        if entity is None:
            entity = await self.create(model(**fields, **(defaults or {})))
        return entity

    async def update_or_create(
        self,
        model: Type[ModelT],
        values: dict,
        **fields: Any,
    ) -> ModelT:
        """Update the row matching the fields with ``values``, creating it when missing."""
        entity = await self.find_by_fields(model, **fields)
        if entity is None:
            return await self.create(model(**fields, **values))
        return await self.update(entity, **values)

    # Balance queries
    async def sum_amount_field(self, denomination_id: uuid.UUID) -> Decimal:
        """Sum of available balances held by users for a denomination (display units)."""
        stmt = select(func.coalesce(func.sum(UserAsset.available_balance), 0)).where(
            UserAsset.denomination_id == denomination_id
        )
        result = await self.session.execute(stmt)
        return Decimal(str(result.scalar_one()))

    async def get_max_user_balance(self, denomination_id: uuid.UUID) -> Decimal:
        """Largest single user balance for a denomination (display units)."""
        stmt = select(func.coalesce(func.max(UserAsset.available_balance), 0)).where(
            UserAsset.denomination_id == denomination_id
        )
        result = await self.session.execute(stmt)
        return Decimal(str(result.scalar_one()))

    # Sweep queries
    async def fetch_sweep_candidates(self) -> list[Transaction]:
        """Completed deposits not yet swept, ordered by asset then age."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.transaction_tag == TransactionTag.DEPOSIT.value,
                Transaction.transaction_status == TransactionStatus.COMPLETED.value,
                Transaction.swept_status.is_(False),
            )
            .order_by(Transaction.asset_symbol, Transaction.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def bulk_update_transaction_swept_status(self, transaction_ids: Iterable[uuid.UUID]) -> int:
        """Mark transactions as swept. Rows already swept are left untouched.

        Returns:
            Number of rows that flipped
        """
        ids = list(transaction_ids)
        if not ids:
            return 0
        stmt = (
            update(Transaction)
            .where(Transaction.id.in_(ids), Transaction.swept_status.is_(False))
            .values(swept_status=True, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    # Withdrawal queue queries
    async def fetch_active_batches(self, statuses: Sequence[BatchStatus]) -> list[BatchRequest]:
        """Batches in any of the given statuses, oldest first."""
        stmt = (
            select(BatchRequest)
            .where(BatchRequest.status.in_([s.value for s in statuses]))
            .order_by(BatchRequest.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def fetch_pending_single_queue(self) -> list[TransactionQueue]:
        """Pending queue rows that are not part of a batch."""
        stmt = (
            select(TransactionQueue)
            .where(
                TransactionQueue.transaction_status == TransactionStatus.PENDING.value,
                TransactionQueue.batch_id.is_(None),
            )
            .order_by(TransactionQueue.asset_symbol, TransactionQueue.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def fetch_batch_queue(
        self,
        batch_id: uuid.UUID,
        status: TransactionStatus = TransactionStatus.PENDING,
    ) -> list[TransactionQueue]:
        """Queue rows of a batch in the given status."""
        return await self.fetch(TransactionQueue, batch_id=batch_id, transaction_status=status.value)

    async def update_withdrawal_status(
        self,
        transaction_ids: Sequence[uuid.UUID],
        status: TransactionStatus,
        on_chain_tx_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Set status (and chain transaction link) on transactions and their queue rows.

        Callers run this inside ``transaction()`` together with the related
        batch/chain-transaction writes.
        """
        if not transaction_ids:
            return
        values: dict[str, Any] = {"transaction_status": status.value, "updated_at": utcnow()}
        if on_chain_tx_id is not None:
            values["on_chain_tx_id"] = on_chain_tx_id
        await self.session.execute(
            update(Transaction)
            .where(Transaction.id.in_(transaction_ids))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        values.pop("on_chain_tx_id", None)
        await self.session.execute(
            update(TransactionQueue)
            .where(TransactionQueue.transaction_id.in_(transaction_ids))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )

    async def find_chain_transaction_for_batch(
        self, batch_id: uuid.UUID
    ) -> Optional[ChainTransaction]:
        return await self.find_by_fields(ChainTransaction, batch_id=batch_id)

    # Float manager audit
    async def fetch_float_runs_on(self, asset_symbol: str, day: date) -> list[FloatManagerRun]:
        """Audit rows for an asset written on the given day, newest first."""
        start = datetime.combine(day, time.min)
        stmt = (
            select(FloatManagerRun)
            .where(
                FloatManagerRun.asset_symbol == asset_symbol,
                FloatManagerRun.created_at >= start,
                FloatManagerRun.created_at < start + timedelta(days=1),
            )
            .order_by(FloatManagerRun.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def sum_transactions_since(
        self,
        asset_symbol: str,
        tag: TransactionTag,
        since: Optional[datetime],
    ) -> tuple[Decimal, Optional[datetime]]:
        """Sum values (display units) of transactions with ``tag`` created after ``since``.

        Returns:
            (sum, created_at of the newest row seen or None)
        """
        rows = await self.fetch_by_fields_from_date(
            Transaction, since, asset_symbol=asset_symbol, transaction_tag=tag.value
        )
        rows.sort(key=lambda row: row.created_at)
        total = sum((Decimal(row.value) for row in rows), Decimal("0"))
        return total, rows[-1].created_at if rows else None
