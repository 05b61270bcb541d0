"""
BalanceSelector -- read-only account balance projection over the ledger.

Responsibility:
    Computes available/pending balance, total earnings and total payouts
    for an account in ONE aggregate statement, so all four figures come
    from the same snapshot (no torn read mixing pre- and post-reversal
    state).

Architecture position:
    Kernel > Selectors.  Read-only.

Invariants enforced:
    - Balances are never stored; they are a pure function of ledger rows.
    - The aggregate agrees with ``domain.balances.replay_balance`` over the
      same rows (checked by ``LedgerService.reconcile_balance``).
"""

from uuid import UUID

from sqlalchemy import and_, case, func, literal, or_, select

from leadpay_kernel.domain.balances import AccountBalance
from leadpay_kernel.domain.money import to_money
from leadpay_kernel.models.transaction import Transaction
from leadpay_kernel.selectors.base import BaseSelector


class BalanceSelector(BaseSelector):
    """Derives ``AccountBalance`` values from ledger rows."""

    def get_balance(self, account_id: UUID) -> AccountBalance:
        """
        Balance of ``account_id`` as of the session's current snapshot.

        An account with no ledger history has an all-zero balance.
        """
        credited = Transaction.to_account == account_id
        debited = Transaction.from_account == account_id
        completed = Transaction.status == "completed"
        pending = Transaction.status == "pending"

        earnings = func.sum(
            case((and_(credited, completed), Transaction.net_amount), else_=literal(0))
        )
        payouts = func.sum(
            case((and_(debited, completed), Transaction.amount), else_=literal(0))
        )
        pending_in = func.sum(
            case((and_(credited, pending), Transaction.net_amount), else_=literal(0))
        )

        row = self.session.execute(
            select(earnings, payouts, pending_in).where(or_(credited, debited))
        ).one()

        total_earnings = to_money(row[0])
        total_payouts = to_money(row[1])
        return AccountBalance(
            account_id=account_id,
            available_balance=total_earnings - total_payouts,
            pending_balance=to_money(row[2]),
            total_earnings=total_earnings,
            total_payouts=total_payouts,
        )
