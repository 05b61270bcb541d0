"""
Typed Exception Hierarchy for the LeadPay Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the kernel (the platform facade, the payout settlement worker,
tests) must react to failures by TYPE, never by parsing messages:

    try:
        registry.accept_terms(actor, request_id)
    except StateConflictError as e:
        # Re-fetch current state, the request moved on
        api_response(code=e.code, status=e.status)

Every exception has:
  1. A ``code`` class attribute (machine-readable, API-safe)
  2. Structured attributes describing the failure (field, bound, status, ...)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LeadPayError (base)
    |
    +-- ValidationError
    |
    +-- StateConflictError
    |   +-- InvalidTransitionError
    |   +-- RoleNotPermittedError
    |   +-- NotAPartyError
    |
    +-- CapExceededError
    |
    +-- NotFoundError
    |   +-- ConnectionRequestNotFoundError
    |   +-- ConnectionNotFoundError
    |   +-- TransactionNotFoundError
    |
    +-- PersistenceError
    |   +-- OptimisticLockError
    |
    +-- ConstraintViolationError
    |
    +-- PaymentProcessorError
    |
    +-- ImmutabilityViolationError
    |
    +-- BalanceReconciliationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                          | When Raised                          | Retry?
------------------------------|--------------------------------------|--------
VALIDATION_ERROR              | Malformed / out-of-bounds input      | Never
STATE_CONFLICT                | Operation invalid for current state  | Re-fetch
INVALID_TRANSITION            | No transition from current status    | Re-fetch
ROLE_NOT_PERMITTED            | Wrong role for the transition        | Never
NOT_A_PARTY                   | Actor is not provider/buyer of it    | Never
CAP_EXCEEDED                  | Weekly/monthly lead cap reached      | Next window
NOT_FOUND                     | Unknown id                           | Never
CONNECTION_REQUEST_NOT_FOUND  | Unknown connection request id        | Never
CONNECTION_NOT_FOUND          | Unknown connection id                | Never
TRANSACTION_NOT_FOUND         | Unknown ledger transaction id        | Never
PERSISTENCE_ERROR             | Storage layer failure                | Bounded
OPTIMISTIC_LOCK_CONFLICT      | Compare-and-set lost repeatedly      | Bounded
CONSTRAINT_VIOLATION          | Stored data rejects the write        | Never
PAYMENT_PROCESSOR_ERROR       | External processor rejected payout   | Operator
IMMUTABILITY_VIOLATION        | Direct write to a finalized record   | Never
BALANCE_RECONCILIATION_FAILED | Aggregate != replayed history        | Never

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Domain exceptions inherit from Exception, not ValueError or KeyError,
   so they are catchable as a group and never confused with programming
   errors.

2. ``code`` is a class attribute: codes are static per type and can be
   read without instantiation (API docs, static analysis).

3. "Cap reached" is computed as a typed ``CapStatus`` result inside the
   kernel; ``CapExceededError`` only crosses the public boundary of a
   lead submission.

===============================================================================
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class LeadPayError(Exception):
    """
    Base exception for all LeadPay kernel errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "LEADPAY_ERROR"


# Validation


class ValidationError(LeadPayError):
    """Malformed or out-of-bounds input.

    Never retried.  Surfaced verbatim with the violated field and bound so
    the caller can render an actionable message.
    """

    code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        field: str,
        message: str,
        bound: Any = None,
        value: Any = None,
        violations: tuple = (),
    ):
        self.field = field
        self.bound = bound
        self.value = value
        self.violations = violations
        super().__init__(message)


# State conflicts


class StateConflictError(LeadPayError):
    """Operation is not valid from the entity's current state or for this role.

    The stored state is left unchanged; the caller must re-fetch.
    """

    code: str = "STATE_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        status: str | None,
        action: str,
        message: str | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.status = status
        self.action = action
        super().__init__(
            message
            or f"Cannot {action} {entity_type} {entity_id} in status {status}"
        )


class InvalidTransitionError(StateConflictError):
    """No transition exists for the action from the current status."""

    code: str = "INVALID_TRANSITION"


class RoleNotPermittedError(StateConflictError):
    """The actor's role may not perform this action."""

    code: str = "ROLE_NOT_PERMITTED"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        status: str | None,
        action: str,
        role: str,
    ):
        self.role = role
        super().__init__(
            entity_type,
            entity_id,
            status,
            action,
            f"Role {role} may not {action} {entity_type} {entity_id}",
        )


class NotAPartyError(StateConflictError):
    """The actor is neither the provider nor the buyer of the entity."""

    code: str = "NOT_A_PARTY"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        status: str | None,
        action: str,
        account_id: str,
    ):
        self.account_id = account_id
        super().__init__(
            entity_type,
            entity_id,
            status,
            action,
            f"Account {account_id} is not a party to {entity_type} {entity_id}",
        )


# Lead caps


class CapExceededError(LeadPayError):
    """A lead submission was denied because a weekly or monthly cap is reached.

    ``weekly_remaining`` / ``monthly_remaining`` are None when the
    corresponding cap is not configured.
    """

    code: str = "CAP_EXCEEDED"

    def __init__(
        self,
        connection_id: str,
        weekly_remaining: int | None,
        monthly_remaining: int | None,
        reset_hint: str,
        pause_when_cap_reached: bool = True,
    ):
        self.connection_id = connection_id
        self.weekly_remaining = weekly_remaining
        self.monthly_remaining = monthly_remaining
        self.reset_hint = reset_hint
        self.pause_when_cap_reached = pause_when_cap_reached
        super().__init__(f"Lead cap reached for connection {connection_id}: {reset_hint}")


# Not found


class NotFoundError(LeadPayError):
    """Entity with the given id does not exist."""

    code: str = "NOT_FOUND"
    entity_type: str = "entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type} not found: {entity_id}")


class ConnectionRequestNotFoundError(NotFoundError):
    code: str = "CONNECTION_REQUEST_NOT_FOUND"
    entity_type: str = "ConnectionRequest"


class ConnectionNotFoundError(NotFoundError):
    code: str = "CONNECTION_NOT_FOUND"
    entity_type: str = "Connection"


class TransactionNotFoundError(NotFoundError):
    code: str = "TRANSACTION_NOT_FOUND"
    entity_type: str = "Transaction"


# Persistence


class PersistenceError(LeadPayError):
    """Storage layer failure.

    Safe to retry: every unit of work is rolled back before this is raised
    and all writes are guarded by the entity's current-state precondition.
    """

    code: str = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, attempts: int, reason: str):
        self.operation = operation
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Persistence failure in {operation} after {attempts} attempt(s): {reason}"
        )


class OptimisticLockError(PersistenceError):
    """A compare-and-set update lost the race on every attempt."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, attempts: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            operation=f"{entity_type}.compare_and_set",
            attempts=attempts,
            reason=f"concurrent modification of {entity_type} {entity_id}",
        )


class ConstraintViolationError(LeadPayError):
    """The store rejected a write with an integrity constraint.

    Retrying the same unit of work cannot succeed, so it is never retried.
    """

    code: str = "CONSTRAINT_VIOLATION"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Constraint violation in {operation}: {reason}")


# Payment processor


class PaymentProcessorError(LeadPayError):
    """The external payment processor rejected or failed a payout.

    Triggers ``LedgerService.fail`` and is always surfaced, never swallowed.
    """

    code: str = "PAYMENT_PROCESSOR_ERROR"

    def __init__(
        self,
        transaction_id: str,
        message: str,
        processor_code: str | None = None,
    ):
        self.transaction_id = transaction_id
        self.processor_code = processor_code
        super().__init__(f"Payment processor failed for {transaction_id}: {message}")


# Immutability


class ImmutabilityViolationError(LeadPayError):
    """Attempt to modify a finalized ledger entry or a closed negotiation."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


# Ledger reconciliation


class BalanceReconciliationError(LeadPayError):
    """Aggregated balance disagrees with a full replay of the ledger."""

    code: str = "BALANCE_RECONCILIATION_FAILED"

    def __init__(
        self,
        account_id: str,
        field: str,
        aggregated: Decimal,
        replayed: Decimal,
    ):
        self.account_id = account_id
        self.field = field
        self.aggregated = aggregated
        self.replayed = replayed
        super().__init__(
            f"Balance mismatch for {account_id} on {field}: "
            f"aggregated={aggregated}, replayed={replayed}"
        )
