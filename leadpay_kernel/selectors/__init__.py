"""Selectors for the LeadPay kernel (read side)."""

from leadpay_kernel.selectors.balance_selector import BalanceSelector
from leadpay_kernel.selectors.connection_selector import ConnectionSelector
from leadpay_kernel.selectors.transaction_selector import LedgerReport, TransactionSelector

__all__ = [
    "BalanceSelector",
    "ConnectionSelector",
    "LedgerReport",
    "TransactionSelector",
]
