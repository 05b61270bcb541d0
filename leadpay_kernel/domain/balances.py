"""
Account balances -- derived, never stored.

Balances are a pure function of ledger history:

    total_earnings    = sum(net_amount) of completed entries paid TO the account
    total_payouts     = sum(amount)     of completed entries paid FROM the account
    available_balance = total_earnings - total_payouts
    pending_balance   = sum(net_amount) of pending entries paid TO the account

``replay_balance`` is the reference implementation.  BalanceSelector
computes the same figures with one aggregate statement; the two must
always agree (``LedgerService.reconcile_balance``).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from leadpay_kernel.domain.money import ZERO, to_money


@dataclass(frozen=True)
class AccountBalance:
    account_id: UUID
    available_balance: Decimal
    pending_balance: Decimal
    total_earnings: Decimal
    total_payouts: Decimal

    @classmethod
    def empty(cls, account_id: UUID) -> AccountBalance:
        return cls(
            account_id=account_id,
            available_balance=ZERO,
            pending_balance=ZERO,
            total_earnings=ZERO,
            total_payouts=ZERO,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": str(self.account_id),
            "availableBalance": str(self.available_balance),
            "pendingBalance": str(self.pending_balance),
            "totalEarnings": str(self.total_earnings),
            "totalPayouts": str(self.total_payouts),
        }


@dataclass(frozen=True)
class BalanceEntry:
    """The balance-relevant projection of one ledger entry."""

    status: str
    amount: Decimal
    net_amount: Decimal
    from_account: UUID | None
    to_account: UUID | None


def replay_balance(account_id: UUID, entries: Iterable[BalanceEntry]) -> AccountBalance:
    """Compute an account's balance by walking its full history."""
    earnings = ZERO
    payouts = ZERO
    pending = ZERO
    for entry in entries:
        if entry.to_account == account_id:
            if entry.status == "completed":
                earnings += entry.net_amount
            elif entry.status == "pending":
                pending += entry.net_amount
        if entry.from_account == account_id and entry.status == "completed":
            payouts += entry.amount

    return AccountBalance(
        account_id=account_id,
        available_balance=to_money(earnings - payouts),
        pending_balance=to_money(pending),
        total_earnings=to_money(earnings),
        total_payouts=to_money(payouts),
    )
