"""
Module: leadpay_kernel.models.transaction
Responsibility: ORM persistence for ledger entries -- the single source of
    financial truth.  Balances are always derived from these rows.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - Type and status are drawn from fixed sets (CHECK constraints).
    - A lead_payout has a positive amount and no fee (CHECK).
    - A platform_fee never credits an account (CHECK on to_account).
    - One payout per lead (partial UNIQUE index on lead_id for
      lead_payout rows).
    - One reversal per original entry (UNIQUE on original_transaction_id).
    - Entries in completed/failed/reversed status are immutable except for
      the single completed -> reversed transition (ORM listeners in
      db/immutability.py).

Failure modes:
    - IntegrityError on a CHECK violation, a second payout for a lead_id
      or a second reversal of one entry.
    - ImmutabilityViolationError on UPDATE/DELETE of a final entry.

Audit relevance:
    Rows are append-only.  A reversal never edits amounts; it adds a
    compensating adjustment and links both rows.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from leadpay_kernel.db.base import Base, UUIDString

TRANSACTION_TYPES = ("lead_payout", "policy_commission", "platform_fee", "refund", "adjustment")
TRANSACTION_STATUSES = ("pending", "completed", "failed", "reversed")
FINAL_STATUSES = frozenset({"completed", "failed", "reversed"})


def _in_list(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


class Transaction(Base):
    """
    One money movement between two accounts (either may be external).

    Contract:
        Inserted by LedgerService.record().  Status moves only through
        conditional updates keyed on the current status.

    Guarantees:
        - net_amount is fixed at insert time.
        - ``transaction_metadata`` is stored in the ``metadata`` column.
    """

    __tablename__ = "ledger_transactions"

    __table_args__ = (
        CheckConstraint(_in_list("type", TRANSACTION_TYPES), name="ck_txn_type"),
        CheckConstraint(_in_list("status", TRANSACTION_STATUSES), name="ck_txn_status"),
        CheckConstraint(
            "type <> 'lead_payout' OR (amount > 0 AND fee_amount = 0)",
            name="ck_txn_lead_payout_amount",
        ),
        CheckConstraint(
            "type <> 'platform_fee' OR to_account IS NULL",
            name="ck_txn_platform_fee_target",
        ),
        Index("idx_txn_from_account", "from_account"),
        Index("idx_txn_to_account", "to_account"),
        Index("idx_txn_connection", "connection_id"),
        Index("idx_txn_created_at", "created_at"),
        Index(
            "uq_txn_lead_payout_lead_id",
            "lead_id",
            unique=True,
            postgresql_where=text("type = 'lead_payout' AND lead_id IS NOT NULL"),
            sqlite_where=text("type = 'lead_payout' AND lead_id IS NOT NULL"),
        ),
    )

    type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)

    amount: Mapped[Decimal] = mapped_column(nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    net_amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # NULL means external or platform-owned
    from_account: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    to_account: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # References
    lead_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    connection_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("connections.id"),
        nullable=True,
    )
    policy_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Payment processor references
    processor_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processor_transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processor_payout_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    transaction_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Reversal linkage
    reversed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reversal_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    reversal_transaction_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    original_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_transactions.id"),
        nullable=True,
        unique=True,
    )

    def __repr__(self) -> str:
        return f"<Transaction {self.id} {self.type} {self.status} {self.amount}>"
