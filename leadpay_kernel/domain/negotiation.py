"""
Negotiation state machine -- ConnectionRequest and Connection lifecycle.

Responsibility:
    Declares the request and connection statuses, the actions that move
    between them, and which role may perform each action.  The table is
    the single authority on reachable transitions; services consult it
    before writing anything.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Only transitions present in ``TRANSITIONS`` are reachable.
    - Terminal statuses have no outgoing transitions.
    - Each transition names exactly one permitted role (``None`` means
      either party).

Failure modes:
    - InvalidTransitionError: No transition exists for the action from the
      current status (includes every action from a terminal status).
    - RoleNotPermittedError: The transition exists but not for this role.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from leadpay_kernel.domain.actors import Role
from leadpay_kernel.exceptions import InvalidTransitionError, RoleNotPermittedError


class RequestStatus(str, Enum):
    """Status of a ConnectionRequest."""

    PENDING_BUYER_REVIEW = "pending_buyer_review"
    PENDING_PROVIDER_ACCEPT = "pending_provider_accept"
    ACCEPTED = "accepted"  # Superseded by a Connection
    DECLINED_BY_PROVIDER = "declined_by_provider"
    REJECTED_BY_BUYER = "rejected_by_buyer"

    @property
    def is_terminal(self) -> bool:
        return self not in _OPEN_REQUEST_STATUSES


_OPEN_REQUEST_STATUSES = frozenset(
    {RequestStatus.PENDING_BUYER_REVIEW, RequestStatus.PENDING_PROVIDER_ACCEPT}
)


class ConnectionStatus(str, Enum):
    """Status of an accepted Connection.  ``terminated`` is one-way."""

    ACTIVE = "active"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self == ConnectionStatus.TERMINATED


class NegotiationAction(str, Enum):
    SET_TERMS = "set_terms"
    REJECT = "reject"
    ACCEPT = "accept"
    DECLINE = "decline"
    TERMINATE = "terminate"
    UPDATE_TERMS = "update_terms"


@dataclass(frozen=True)
class Transition:
    """One edge of the state machine."""

    source: RequestStatus | ConnectionStatus
    action: NegotiationAction
    target: RequestStatus | ConnectionStatus
    role: Role | None  # None: either party


TRANSITIONS: tuple[Transition, ...] = (
    Transition(
        RequestStatus.PENDING_BUYER_REVIEW,
        NegotiationAction.SET_TERMS,
        RequestStatus.PENDING_PROVIDER_ACCEPT,
        Role.BUYER,
    ),
    Transition(
        RequestStatus.PENDING_BUYER_REVIEW,
        NegotiationAction.REJECT,
        RequestStatus.REJECTED_BY_BUYER,
        Role.BUYER,
    ),
    Transition(
        RequestStatus.PENDING_PROVIDER_ACCEPT,
        NegotiationAction.ACCEPT,
        RequestStatus.ACCEPTED,
        Role.PROVIDER,
    ),
    Transition(
        RequestStatus.PENDING_PROVIDER_ACCEPT,
        NegotiationAction.DECLINE,
        RequestStatus.DECLINED_BY_PROVIDER,
        Role.PROVIDER,
    ),
    Transition(
        ConnectionStatus.ACTIVE,
        NegotiationAction.TERMINATE,
        ConnectionStatus.TERMINATED,
        None,
    ),
    Transition(
        ConnectionStatus.ACTIVE,
        NegotiationAction.UPDATE_TERMS,
        ConnectionStatus.ACTIVE,
        Role.BUYER,
    ),
)

_BY_SOURCE_ACTION: dict[tuple[str, NegotiationAction], Transition] = {
    (t.source.value, t.action): t for t in TRANSITIONS
}


def initial_request_status(initiator: Role) -> RequestStatus:
    """Provider-initiated requests wait for buyer terms; buyer invitations carry them."""
    match initiator:
        case Role.PROVIDER:
            return RequestStatus.PENDING_BUYER_REVIEW
        case Role.BUYER:
            return RequestStatus.PENDING_PROVIDER_ACCEPT


def resolve_transition(
    entity_type: str,
    entity_id: str,
    status: RequestStatus | ConnectionStatus | str,
    action: NegotiationAction,
    role: Role,
) -> Transition:
    """
    Look up the transition for ``action`` from ``status`` performed by ``role``.

    Raises:
        InvalidTransitionError: No such transition from this status.
        RoleNotPermittedError: Transition exists but ``role`` may not take it.
    """
    status_value = status.value if isinstance(status, Enum) else status
    transition = _BY_SOURCE_ACTION.get((status_value, action))
    if transition is None:
        raise InvalidTransitionError(
            entity_type=entity_type,
            entity_id=entity_id,
            status=status_value,
            action=action.value,
        )
    if transition.role is not None and transition.role != role:
        raise RoleNotPermittedError(
            entity_type=entity_type,
            entity_id=entity_id,
            status=status_value,
            action=action.value,
            role=role.value,
        )
    return transition


def allowed_actions(status: RequestStatus | ConnectionStatus, role: Role) -> frozenset[NegotiationAction]:
    """Actions ``role`` may take from ``status`` (used for display)."""
    return frozenset(
        t.action
        for t in TRANSITIONS
        if t.source == status and (t.role is None or t.role == role)
    )
