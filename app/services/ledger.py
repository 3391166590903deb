"""
Ledger Writer - Append-only financial records, one per store transaction.

Writes are insert-if-absent on the unique transaction_id, so concurrent
duplicate deliveries can never produce a second row. Nothing is deleted;
the only mutation is succeeded -> refunded.
"""

from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import LedgerEntry
from app.exceptions import DuplicateTransactionError
from app.models.domain import (
    Environment,
    LedgerEntryData,
    LedgerEntryIntent,
    LedgerStatus,
    Platform,
)
from app.observability.logging import get_logger
from app.observability.metrics import metrics

logger = get_logger(__name__)


def _to_data(entry: LedgerEntry) -> LedgerEntryData:
    return LedgerEntryData(
        id=entry.id,
        transaction_id=entry.transaction_id,
        user_id=entry.user_id,
        plan_id=entry.plan_id,
        platform=Platform(entry.platform),
        environment=Environment(entry.environment),
        status=LedgerStatus(entry.status),
        amount_minor=entry.amount_minor,
        currency=entry.currency,
        paid_at=entry.paid_at,
        refunded_at=entry.refunded_at,
    )


class LedgerWriter:
    """Writes ledger entries inside the caller's transaction. Does not commit."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(self, intent: LedgerEntryIntent) -> None:
        """
        Append a succeeded entry for a transaction.

        Raises:
            DuplicateTransactionError: An entry already exists (benign)
        """
        now = datetime.now(UTC)
        stmt = (
            pg_insert(LedgerEntry)
            .values(
                transaction_id=intent.transaction_id,
                user_id=intent.user_id,
                plan_id=intent.plan_id,
                platform=intent.platform.value,
                environment=intent.environment.value,
                status=LedgerStatus.SUCCEEDED.value,
                amount_minor=intent.amount_minor,
                currency=intent.currency,
                paid_at=intent.paid_at,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[LedgerEntry.transaction_id])
            .returning(LedgerEntry.id)
        )
        result = await self.session.execute(stmt)
        entry_id = result.scalar_one_or_none()

        metrics.record_ledger_write(
            intent.platform.value, inserted=entry_id is not None, amount_minor=intent.amount_minor
        )

        if entry_id is None:
            logger.info(
                "ledger_entry_duplicate",
                transaction_id=intent.transaction_id,
                user_id=intent.user_id,
            )
            raise DuplicateTransactionError(intent.transaction_id)

        logger.info(
            "ledger_entry_written",
            entry_id=str(entry_id),
            transaction_id=intent.transaction_id,
            user_id=intent.user_id,
            amount_minor=intent.amount_minor,
            currency=intent.currency,
            environment=intent.environment.value,
        )

    async def mark_refunded(self, transaction_id: str) -> bool:
        """
        Flip a succeeded entry to refunded.

        Returns:
            True if an entry changed; False if none matched or it was already refunded
        """
        now = datetime.now(UTC)
        stmt = (
            update(LedgerEntry)
            .where(
                LedgerEntry.transaction_id == transaction_id,
                LedgerEntry.status == LedgerStatus.SUCCEEDED.value,
            )
            .values(status=LedgerStatus.REFUNDED.value, refunded_at=now, updated_at=now)
            .returning(LedgerEntry.id)
        )
        result = await self.session.execute(stmt)
        refunded = result.scalar_one_or_none() is not None

        metrics.record_ledger_refund(refunded)
        logger.info(
            "ledger_entry_refunded" if refunded else "ledger_refund_unmatched",
            transaction_id=transaction_id,
        )
        return refunded

    async def get(self, transaction_id: str) -> LedgerEntryData | None:
        stmt = select(LedgerEntry).where(LedgerEntry.transaction_id == transaction_id)
        result = await self.session.execute(stmt)
        entry = result.scalar_one_or_none()
        return _to_data(entry) if entry is not None else None
