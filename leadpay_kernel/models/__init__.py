"""ORM models for the LeadPay kernel."""

from leadpay_kernel.models.connection import Connection, ConnectionRequest, pair_key
from leadpay_kernel.models.transaction import Transaction

__all__ = [
    "Connection",
    "ConnectionRequest",
    "Transaction",
    "pair_key",
]
