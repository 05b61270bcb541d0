"""
Actors -- the authenticated identity behind every call.

The identity provider supplies ``{account_id, role}``; the kernel trusts it
and never re-authenticates.  ``Actor`` is a tagged variant: the ``role``
tag decides which negotiation actions are available, and every place that
branches on it matches all roles explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class Role(str, Enum):
    """Marketplace role of an account."""

    PROVIDER = "provider"  # Submits leads, paid per lead
    BUYER = "buyer"  # Receives leads, pays per lead

    @property
    def counterpart(self) -> Role:
        match self:
            case Role.PROVIDER:
                return Role.BUYER
            case Role.BUYER:
                return Role.PROVIDER


@dataclass(frozen=True)
class Actor:
    """Authenticated caller."""

    account_id: UUID
    role: Role

    @classmethod
    def provider(cls, account_id: UUID) -> Actor:
        return cls(account_id=account_id, role=Role.PROVIDER)

    @classmethod
    def buyer(cls, account_id: UUID) -> Actor:
        return cls(account_id=account_id, role=Role.BUYER)

    @property
    def is_provider(self) -> bool:
        return self.role == Role.PROVIDER

    @property
    def is_buyer(self) -> bool:
        return self.role == Role.BUYER


def assign_parties(actor: Actor, counterparty_id: UUID) -> tuple[UUID, UUID]:
    """Return ``(provider_id, buyer_id)`` for a request started by ``actor``."""
    match actor.role:
        case Role.PROVIDER:
            return actor.account_id, counterparty_id
        case Role.BUYER:
            return counterparty_id, actor.account_id
