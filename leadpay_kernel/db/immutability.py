"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Ledger entries must be tamper-proof once final, and a closed negotiation
must not drift after the fact.  Services change state only through
conditional UPDATE statements guarded by the current status; these
listeners catch every OTHER path: code that loads an ORM object, edits a
field and flushes.

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |
         v
    [before_delete event] --> _check_*_delete() ---------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity             | When Immutable                        | Allowed change
-------------------|---------------------------------------|-------------------------------
Transaction        | status in completed/failed/reversed   | completed -> reversed (once)
Transaction        | ALWAYS for delete                     | none
Connection         | After status = terminated             | active -> terminated itself
ConnectionRequest  | After a terminal status               | the closing transition itself

===============================================================================
DESIGN DECISIONS
===============================================================================

1. WHY CHECK "WAS FINAL" NOT "IS FINAL"?
   The closing transition itself must be allowed (pending -> completed,
   active -> terminated).  We detect an already-final row by reading the
   committed value from SQLAlchemy's attribute history.

2. WHY INLINE IMPORTS?
   Avoids circular imports.  Models import from db, db imports from models.

===============================================================================
USAGE
===============================================================================

    from leadpay_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY - never in production):

    unregister_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from leadpay_kernel.exceptions import ImmutabilityViolationError
from leadpay_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Fields a completed entry may change when it is reversed
_REVERSAL_FIELDS = frozenset(
    {"status", "reversed_at", "reversal_reason", "reversal_transaction_id"}
)


def _previous_value(target, attribute: str):
    """Value of ``attribute`` as last loaded from (or flushed to) the database."""
    history = get_history(target, attribute)
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return getattr(target, attribute)


def _changed_fields(target) -> set[str]:
    from sqlalchemy import inspect

    state = inspect(target)
    return {
        attr.key
        for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    }


def _block(entity_type: str, entity_id, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_transaction_immutability(mapper, connection, target):
    """
    Prevent updates to final ledger entries.

    Logic:
        1. Previously pending: allow (this IS the completion/failure).
        2. Previously completed, now reversed, only reversal fields changed:
           allow (this IS the reversal).
        3. Anything else on a previously final entry: block.
    """
    from leadpay_kernel.models.transaction import FINAL_STATUSES

    old_status = _previous_value(target, "status")
    if old_status not in FINAL_STATUSES:
        return

    changed = _changed_fields(target)
    if not changed:
        return

    if (
        old_status == "completed"
        and target.status == "reversed"
        and changed <= _REVERSAL_FIELDS
    ):
        return

    _block(
        "Transaction",
        target.id,
        "UPDATE",
        f"Ledger entry is {old_status}; changed fields: {', '.join(sorted(changed))}",
    )


def _check_transaction_delete(mapper, connection, target):
    _block("Transaction", target.id, "DELETE", "Ledger entries cannot be deleted")


def _check_connection_immutability(mapper, connection, target):
    if _previous_value(target, "status") == "terminated" and _changed_fields(target):
        _block("Connection", target.id, "UPDATE", "Connection is terminated")


def _check_connection_delete(mapper, connection, target):
    _block("Connection", target.id, "DELETE", "Connections are terminated, never deleted")


def _check_request_immutability(mapper, connection, target):
    from leadpay_kernel.models.connection import OPEN_REQUEST_STATUSES

    old_status = _previous_value(target, "status")
    if old_status not in OPEN_REQUEST_STATUSES and _changed_fields(target):
        _block("ConnectionRequest", target.id, "UPDATE", f"Request is {old_status}")


def _check_request_delete(mapper, connection, target):
    _block("ConnectionRequest", target.id, "DELETE", "Requests cannot be deleted")


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call this after all models are imported but before any database
    operations begin.  Registering twice is harmless.
    """
    from leadpay_kernel.models.connection import Connection, ConnectionRequest
    from leadpay_kernel.models.transaction import Transaction

    for target, name, fn in _listeners(Transaction, Connection, ConnectionRequest):
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    from leadpay_kernel.models.connection import Connection, ConnectionRequest
    from leadpay_kernel.models.transaction import Transaction

    for target, name, fn in _listeners(Transaction, Connection, ConnectionRequest):
        if event.contains(target, name, fn):
            event.remove(target, name, fn)


def _listeners(transaction, connection, request):
    return (
        (transaction, "before_update", _check_transaction_immutability),
        (transaction, "before_delete", _check_transaction_delete),
        (connection, "before_update", _check_connection_immutability),
        (connection, "before_delete", _check_connection_delete),
        (request, "before_update", _check_request_immutability),
        (request, "before_delete", _check_request_delete),
    )
