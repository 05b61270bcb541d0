"""
Pure domain layer.

This module contains value objects and decision logic with NO
dependencies on:
- ORM (SQLAlchemy)
- Database
- Wall-clock time (time is always passed in)
- I/O

All domain objects are immutable and deterministic.
"""

from leadpay_kernel.domain.actors import Actor, Role, assign_parties
from leadpay_kernel.domain.balances import AccountBalance, BalanceEntry, replay_balance
from leadpay_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from leadpay_kernel.domain.dtos import (
    ConnectionInfo,
    ConnectionRequestInfo,
    ConnectionStats,
    LeadSubmissionResult,
    TransactionDraft,
    TransactionInfo,
    TransactionStatus,
    TransactionType,
)
from leadpay_kernel.domain.lead_caps import (
    CapStatus,
    CapTracker,
    CounterUpdate,
    LeadCounters,
    format_cap_status,
)
from leadpay_kernel.domain.negotiation import (
    ConnectionStatus,
    NegotiationAction,
    RequestStatus,
    resolve_transition,
)
from leadpay_kernel.domain.terms import ContractTerms, LeadCaps, PaymentTiming
from leadpay_kernel.domain.terms_validator import (
    TermsLimits,
    TermsValidator,
    TermsViolation,
    ValidationResult,
)

__all__ = [
    "AccountBalance",
    "Actor",
    "BalanceEntry",
    "CapStatus",
    "CapTracker",
    "Clock",
    "ConnectionInfo",
    "ConnectionRequestInfo",
    "ConnectionStats",
    "ConnectionStatus",
    "ContractTerms",
    "CounterUpdate",
    "DeterministicClock",
    "LeadCaps",
    "LeadCounters",
    "LeadSubmissionResult",
    "NegotiationAction",
    "PaymentTiming",
    "RequestStatus",
    "Role",
    "SystemClock",
    "TermsLimits",
    "TermsValidator",
    "TermsViolation",
    "TransactionDraft",
    "TransactionInfo",
    "TransactionStatus",
    "TransactionType",
    "ValidationResult",
    "assign_parties",
    "format_cap_status",
    "replay_balance",
    "resolve_transition",
]
