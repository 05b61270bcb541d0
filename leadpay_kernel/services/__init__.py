"""Kernel services -- write-side operations over a caller-owned session."""

from leadpay_kernel.services.connection_registry import ConnectionRegistry
from leadpay_kernel.services.ledger_service import LedgerService, ReversalResult

__all__ = [
    "ConnectionRegistry",
    "LedgerService",
    "ReversalResult",
]
