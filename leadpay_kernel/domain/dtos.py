"""
DTOs -- Immutable data transfer objects returned by services and selectors.

Responsibility:
    Frozen snapshots of requests, connections and ledger entries.  Callers
    outside the kernel never receive ORM instances, so nothing they hold
    can be flushed back by accident.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    ``from_model()`` class methods are boundary converters invoked only
    from the service and selector layers.

Data flow:
    TransactionDraft -> LedgerService.record() -> TransactionInfo
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any
from uuid import UUID

from leadpay_kernel.domain.actors import Role
from leadpay_kernel.domain.lead_caps import CapStatus, LeadCounters
from leadpay_kernel.domain.money import to_money
from leadpay_kernel.domain.negotiation import ConnectionStatus, RequestStatus
from leadpay_kernel.domain.terms import ContractTerms

if TYPE_CHECKING:
    from leadpay_kernel.models.connection import Connection as ConnectionModel
    from leadpay_kernel.models.connection import (
        ConnectionRequest as ConnectionRequestModel,
    )
    from leadpay_kernel.models.transaction import Transaction as TransactionModel


class TransactionType(str, Enum):
    LEAD_PAYOUT = "lead_payout"
    POLICY_COMMISSION = "policy_commission"
    PLATFORM_FEE = "platform_fee"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class TransactionStatus(str, Enum):
    """Ledger entry status.

    ``completed``, ``failed`` and ``reversed`` are final, except that a
    completed entry may move once to ``reversed``.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


@dataclass(frozen=True)
class ConnectionStats:
    total_leads: int
    total_paid: Decimal
    leads_this_week: int
    leads_this_month: int
    week_start_date: str | None
    month_start_date: str | None
    last_lead_at: datetime | None = None

    @property
    def counters(self) -> LeadCounters:
        return LeadCounters(
            leads_this_week=self.leads_this_week,
            leads_this_month=self.leads_this_month,
            week_start_date=self.week_start_date,
            month_start_date=self.month_start_date,
        )


@dataclass(frozen=True)
class ConnectionRequestInfo:
    """Snapshot of a ConnectionRequest."""

    id: UUID
    provider_id: UUID
    buyer_id: UUID
    initiator: Role
    status: RequestStatus
    created_at: datetime
    message: str | None = None
    proposed_terms: ContractTerms | None = None
    reviewed_at: datetime | None = None
    responded_at: datetime | None = None
    connection_id: UUID | None = None

    @classmethod
    def from_model(cls, model: ConnectionRequestModel) -> ConnectionRequestInfo:
        return cls(
            id=model.id,
            provider_id=model.provider_id,
            buyer_id=model.buyer_id,
            initiator=Role(model.initiator),
            status=RequestStatus(model.status),
            created_at=model.created_at,
            message=model.message,
            proposed_terms=(
                ContractTerms.from_dict(model.proposed_terms)
                if model.proposed_terms is not None
                else None
            ),
            reviewed_at=model.reviewed_at,
            responded_at=model.responded_at,
            connection_id=model.connection_id,
        )


@dataclass(frozen=True)
class ConnectionInfo:
    """
    Snapshot of a Connection.

    Guarantees:
        - ``terms`` is the full, validated ContractTerms in force.
        - ``version`` increases on every counter or terms write.
    """

    id: UUID
    request_id: UUID
    provider_id: UUID
    buyer_id: UUID
    status: ConnectionStatus
    terms: ContractTerms
    stats: ConnectionStats
    requested_at: datetime
    accepted_at: datetime
    version: int
    terms_set_at: datetime | None = None
    terms_updated_at: datetime | None = None
    terminated_at: datetime | None = None
    terminated_by: UUID | None = None
    termination_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    @classmethod
    def from_model(cls, model: ConnectionModel) -> ConnectionInfo:
        return cls(
            id=model.id,
            request_id=model.request_id,
            provider_id=model.provider_id,
            buyer_id=model.buyer_id,
            status=ConnectionStatus(model.status),
            terms=ContractTerms.from_dict(model.terms),
            stats=ConnectionStats(
                total_leads=model.total_leads,
                total_paid=to_money(model.total_paid),
                leads_this_week=model.leads_this_week,
                leads_this_month=model.leads_this_month,
                week_start_date=model.week_start_date,
                month_start_date=model.month_start_date,
                last_lead_at=model.last_lead_at,
            ),
            requested_at=model.requested_at,
            accepted_at=model.accepted_at,
            version=model.version,
            terms_set_at=model.terms_set_at,
            terms_updated_at=model.terms_updated_at,
            terminated_at=model.terminated_at,
            terminated_by=model.terminated_by,
            termination_reason=model.termination_reason,
        )


@dataclass(frozen=True)
class TransactionDraft:
    """
    Caller-supplied ledger entry, not yet persisted.

    ``amount``, ``fee_amount`` and ``net_amount`` accept Decimal, int or a
    numeric string; floats are rejected by the ledger.  ``net_amount``
    defaults to ``amount - fee_amount``.
    """

    type: TransactionType | str
    amount: Any
    from_account: UUID | None = None
    to_account: UUID | None = None
    fee_amount: Any = None
    net_amount: Any = None
    currency: str | None = None
    status: TransactionStatus | str = TransactionStatus.PENDING
    lead_id: str | None = None
    connection_id: UUID | None = None
    policy_number: str | None = None
    processor_payment_id: str | None = None
    processor_transfer_id: str | None = None
    processor_payout_id: str | None = None
    description: str = ""
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class TransactionInfo:
    """Snapshot of a persisted ledger entry."""

    id: UUID
    type: TransactionType
    status: TransactionStatus
    amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    currency: str
    from_account: UUID | None
    to_account: UUID | None
    created_at: datetime
    description: str = ""
    lead_id: str | None = None
    connection_id: UUID | None = None
    policy_number: str | None = None
    processor_payment_id: str | None = None
    processor_transfer_id: str | None = None
    processor_payout_id: str | None = None
    metadata: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    reversed_at: datetime | None = None
    reversal_reason: str | None = None
    reversal_transaction_id: UUID | None = None
    original_transaction_id: UUID | None = None

    @property
    def is_reversal(self) -> bool:
        """True for the compensating adjustment created by a reversal."""
        return self.original_transaction_id is not None

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionInfo:
        return cls(
            id=model.id,
            type=TransactionType(model.type),
            status=TransactionStatus(model.status),
            amount=to_money(model.amount),
            fee_amount=to_money(model.fee_amount),
            net_amount=to_money(model.net_amount),
            currency=model.currency,
            from_account=model.from_account,
            to_account=model.to_account,
            created_at=model.created_at,
            description=model.description or "",
            lead_id=model.lead_id,
            connection_id=model.connection_id,
            policy_number=model.policy_number,
            processor_payment_id=model.processor_payment_id,
            processor_transfer_id=model.processor_transfer_id,
            processor_payout_id=model.processor_payout_id,
            metadata=MappingProxyType(dict(model.transaction_metadata or {})),
            completed_at=model.completed_at,
            failed_at=model.failed_at,
            failure_reason=model.failure_reason,
            reversed_at=model.reversed_at,
            reversal_reason=model.reversal_reason,
            reversal_transaction_id=model.reversal_transaction_id,
            original_transaction_id=model.original_transaction_id,
        )


@dataclass(frozen=True)
class LeadSubmissionResult:
    """
    Outcome of an authorized lead submission.

    ``cap_status`` reflects the counters after this lead was counted.
    ``duplicate`` is True when the lead_id had already been paid for on
    this connection; no counter moved and ``transaction`` is the original
    payout.
    """

    allowed: bool
    cap_status: CapStatus
    transaction: TransactionInfo
    connection: ConnectionInfo
    duplicate: bool = False
