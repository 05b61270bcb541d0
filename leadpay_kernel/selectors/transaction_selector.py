"""
TransactionSelector -- read-only queries over ledger entries.

Responsibility:
    Lists ledger entries by account, type, connection and date range,
    loads the full history used for balance replay, and builds the period
    ``LedgerReport`` (counts by status, completed volume and totals per
    type).

Architecture position:
    Kernel > Selectors.  Read-only; returns DTOs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select

from leadpay_kernel.domain.balances import BalanceEntry
from leadpay_kernel.domain.dtos import TransactionInfo, TransactionStatus, TransactionType
from leadpay_kernel.domain.money import ZERO, to_money
from leadpay_kernel.models.transaction import Transaction
from leadpay_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class LedgerReport:
    """
    Financial summary of a period.

    Volume and per-type totals count completed entries only; ``by_status``
    counts every entry created in the period.
    """

    period_start: datetime
    period_end: datetime
    total_transactions: int
    total_volume: Decimal
    total_fees: Decimal
    payouts: Decimal
    commissions: Decimal
    platform_fees: Decimal
    refunds: Decimal
    by_status: dict[str, int] = field(default_factory=dict)
    transactions: tuple[TransactionInfo, ...] = ()


class TransactionSelector(BaseSelector):
    """Read-only access to ledger entries."""

    def get(self, transaction_id: UUID) -> TransactionInfo | None:
        model = self.session.get(Transaction, transaction_id)
        return TransactionInfo.from_model(model) if model is not None else None

    def list_by_account(self, account_id: UUID, limit: int = 50) -> list[TransactionInfo]:
        """Entries paid to or from ``account_id``, newest first."""
        return self._list(
            select(Transaction).where(
                or_(
                    Transaction.from_account == account_id,
                    Transaction.to_account == account_id,
                )
            ),
            limit,
        )

    def list_by_type(self, txn_type: TransactionType | str, limit: int = 50) -> list[TransactionInfo]:
        value = TransactionType(txn_type).value
        return self._list(select(Transaction).where(Transaction.type == value), limit)

    def list_by_connection(self, connection_id: UUID, limit: int = 100) -> list[TransactionInfo]:
        return self._list(
            select(Transaction).where(Transaction.connection_id == connection_id),
            limit,
        )

    def list_by_date_range(
        self,
        start: datetime,
        end: datetime,
        limit: int | None = 100,
    ) -> list[TransactionInfo]:
        """Entries created in ``[start, end]``, newest first."""
        return self._list(
            select(Transaction).where(
                Transaction.created_at >= start,
                Transaction.created_at <= end,
            ),
            limit,
        )

    def find_lead_payout(self, lead_id: str) -> TransactionInfo | None:
        model = self.session.execute(
            select(Transaction).where(
                Transaction.type == TransactionType.LEAD_PAYOUT.value,
                Transaction.lead_id == lead_id,
            )
        ).scalar_one_or_none()
        return TransactionInfo.from_model(model) if model is not None else None

    def balance_history(self, account_id: UUID) -> list[BalanceEntry]:
        """Every entry touching ``account_id``, oldest first, for replay."""
        rows = self.session.execute(
            select(
                Transaction.status,
                Transaction.amount,
                Transaction.net_amount,
                Transaction.from_account,
                Transaction.to_account,
            )
            .where(
                or_(
                    Transaction.from_account == account_id,
                    Transaction.to_account == account_id,
                )
            )
            .order_by(Transaction.created_at, Transaction.id)
        ).all()
        return [
            BalanceEntry(
                status=row.status,
                amount=to_money(row.amount),
                net_amount=to_money(row.net_amount),
                from_account=row.from_account,
                to_account=row.to_account,
            )
            for row in rows
        ]

    def report(self, start: datetime, end: datetime) -> LedgerReport:
        """Summarize all entries created in ``[start, end]``."""
        transactions = self.list_by_date_range(start, end, limit=None)
        completed = [t for t in transactions if t.status == TransactionStatus.COMPLETED]

        def total(txn_type: TransactionType) -> Decimal:
            return sum((t.amount for t in completed if t.type == txn_type), ZERO)

        return LedgerReport(
            period_start=start,
            period_end=end,
            total_transactions=len(transactions),
            total_volume=sum((abs(t.amount) for t in completed), ZERO),
            total_fees=sum((t.fee_amount for t in completed), ZERO),
            payouts=total(TransactionType.LEAD_PAYOUT),
            commissions=total(TransactionType.POLICY_COMMISSION),
            platform_fees=total(TransactionType.PLATFORM_FEE),
            refunds=total(TransactionType.REFUND),
            by_status={
                status.value: sum(1 for t in transactions if t.status == status)
                for status in TransactionStatus
            },
            transactions=tuple(transactions),
        )

    def _list(self, stmt, limit: int | None) -> list[TransactionInfo]:
        stmt = stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [TransactionInfo.from_model(m) for m in self.session.execute(stmt).scalars()]
