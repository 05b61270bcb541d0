"""
Module: leadpay_kernel.models.connection
Responsibility: ORM persistence for connection requests (the negotiation
    phase) and connections (the accepted relationship).
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - At most one open request per provider+buyer pair (UNIQUE on
      open_pair_key, which is NULL once the request is closed).
    - At most one active connection per pair (UNIQUE on active_pair_key,
      NULL once terminated).
    - At most one connection per request (UNIQUE on request_id).
    - Lead counters are never negative (CHECK constraints).
    - Closed requests and terminated connections are immutable
      (ORM listeners in db/immutability.py).

Failure modes:
    - IntegrityError on a duplicate open request or active connection for
      the same pair, or on a second connection for one request.
    - ImmutabilityViolationError on UPDATE/DELETE of a closed request or a
      terminated connection.

Audit relevance:
    Terms are stored as a JSON snapshot and replaced wholesale; the request
    keeps the terms the provider accepted.
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
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from leadpay_kernel.db.base import Base, UUIDString


OPEN_REQUEST_STATUSES = frozenset({"pending_buyer_review", "pending_provider_accept"})


def pair_key(provider_id: UUID, buyer_id: UUID) -> str:
    """Natural key of a provider+buyer pair."""
    return f"{provider_id}:{buyer_id}"


class ConnectionRequest(Base):
    """
    An unconsummated negotiation between one provider and one buyer.

    Contract:
        Created by either party; moved forward only by the counterparty.
        ``open_pair_key`` is set while the request is pending and cleared
        when it reaches a terminal status.
    """

    __tablename__ = "connection_requests"

    __table_args__ = (
        CheckConstraint("provider_id <> buyer_id", name="ck_request_distinct_parties"),
        Index("idx_request_provider", "provider_id"),
        Index("idx_request_buyer", "buyer_id"),
        Index("idx_request_status", "status"),
    )

    provider_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    buyer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Role of the party that opened the request
    initiator: Mapped[str] = mapped_column(String(10), nullable=False)

    message: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # ContractTerms.to_dict() snapshot
    proposed_terms: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False)

    open_pair_key: Mapped[str | None] = mapped_column(
        String(80),
        nullable=True,
        unique=True,
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Set when the provider accepts
    connection_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<ConnectionRequest {self.id} {self.status}>"


class Connection(Base):
    """
    The accepted relationship between a provider and a buyer.

    Contract:
        Created only by accepting a ConnectionRequest.  Mutated only by
        ConnectionRegistry: terms are replaced wholesale, lead counters are
        written with a compare-and-set on ``version``, and ``terminated``
        is final.
    """

    __tablename__ = "connections"

    __table_args__ = (
        CheckConstraint("provider_id <> buyer_id", name="ck_connection_distinct_parties"),
        CheckConstraint("total_leads >= 0", name="ck_connection_total_leads"),
        CheckConstraint("leads_this_week >= 0", name="ck_connection_leads_week"),
        CheckConstraint("leads_this_month >= 0", name="ck_connection_leads_month"),
        Index("idx_connection_provider", "provider_id"),
        Index("idx_connection_buyer", "buyer_id"),
        Index("idx_connection_status", "status"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("connection_requests.id"),
        nullable=False,
        unique=True,
    )

    provider_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    buyer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False)

    active_pair_key: Mapped[str | None] = mapped_column(
        String(80),
        nullable=True,
        unique=True,
    )

    # ContractTerms.to_dict() snapshot
    terms: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    # Lead statistics
    total_leads: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paid: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    leads_this_week: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    leads_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # ISO date keys of the windows the counters belong to
    week_start_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    month_start_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    last_lead_at: Mapped[datetime | None] = mapped_column(nullable=True)

    requested_at: Mapped[datetime] = mapped_column(nullable=False)
    terms_set_at: Mapped[datetime | None] = mapped_column(nullable=True)
    accepted_at: Mapped[datetime] = mapped_column(nullable=False)
    terms_updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    terminated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    terminated_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    termination_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Compare-and-set counter for counter and terms writes
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return f"<Connection {self.id} {self.status} v{self.version}>"
