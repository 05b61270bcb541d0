"""
LedgerService -- append-only store of money movements.

Responsibility:
    Records ledger entries, moves them through pending -> completed /
    failed, reverses completed entries with a compensating adjustment, and
    derives account balances from the entries.

Architecture position:
    Kernel > Services -- imperative shell.  Reads through BalanceSelector
    and TransactionSelector; writes only ``Transaction`` rows.

Invariants enforced:
    - Past entries are never edited: status changes are single conditional
      UPDATEs keyed on (id, expected status), so two racing callers
      cannot both complete, fail or reverse the same entry.
    - A lead_payout has amount > 0 and fee 0; a platform_fee never
      credits an account.
    - A reversal creates exactly one ``adjustment`` with the negated
      amount and swapped accounts, and marks the original ``reversed``.
      The adjustment stays pending and is itself final: it can be neither
      completed nor failed, so the pair is never double-counted.
    - Balances are recomputed from entries on every read.

Failure modes:
    - ValidationError: malformed draft (float amount, > 2 decimals,
      non-positive payout, credited platform fee, bad currency).
    - TransactionNotFoundError: unknown id.
    - ConnectionNotFoundError: draft references an unknown connection.
    - InvalidTransitionError: entry is not in the required status, or is a
      reversal adjustment.
    - StateConflictError: a second payout for an already-paid lead_id.
    - BalanceReconciliationError: aggregate disagrees with replay.

Audit relevance:
    Every write logs a structured event with the transaction id, type,
    amount and resulting status.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadpay_kernel.domain.balances import AccountBalance, replay_balance
from leadpay_kernel.domain.clock import Clock
from leadpay_kernel.domain.dtos import (
    TransactionDraft,
    TransactionInfo,
    TransactionStatus,
    TransactionType,
)
from leadpay_kernel.domain.money import ZERO, decimal_places, parse_amount, to_money
from leadpay_kernel.exceptions import (
    BalanceReconciliationError,
    ConnectionNotFoundError,
    InvalidTransitionError,
    StateConflictError,
    TransactionNotFoundError,
    ValidationError,
)
from leadpay_kernel.logging_config import LogContext, get_logger
from leadpay_kernel.models.connection import Connection
from leadpay_kernel.models.transaction import Transaction
from leadpay_kernel.selectors.balance_selector import BalanceSelector
from leadpay_kernel.selectors.transaction_selector import TransactionSelector
from leadpay_kernel.services.base import BaseService

logger = get_logger("services.ledger")

_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")
_INITIAL_STATUSES = frozenset(
    {TransactionStatus.PENDING, TransactionStatus.COMPLETED, TransactionStatus.FAILED}
)
_MAX_DESCRIPTION = 500


@dataclass(frozen=True)
class ReversalResult:
    """Both sides of a reversal: the original (now reversed) and its adjustment."""

    original: TransactionInfo
    reversal: TransactionInfo


class LedgerService(BaseService):
    """
    Append-only ledger over a caller-owned session.

    Contract:
        Flushes, never commits.  Returns frozen ``TransactionInfo`` DTOs.

    Non-goals:
        - Does NOT call the payment processor (PayoutSettlementService
          reacts to processor outcomes by calling complete/fail).
        - Does NOT maintain stored balances.
    """

    def __init__(self, session: Session, clock: Clock | None = None, currency: str = "USD"):
        super().__init__(session, clock)
        self._currency = currency
        self._balances = BalanceSelector(session)
        self._transactions = TransactionSelector(session)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(self, draft: TransactionDraft) -> TransactionInfo:
        """
        Insert a new entry, pending unless the draft supplies another
        initial status (completed or failed).

        Raises:
            ValidationError: If the draft violates a ledger rule.
            ConnectionNotFoundError: If ``connection_id`` is unknown.
            StateConflictError: If ``lead_id`` already has a payout.
        """
        txn_type = _enum(TransactionType, draft.type, "type")
        status = _enum(TransactionStatus, draft.status, "status")
        if status not in _INITIAL_STATUSES:
            raise ValidationError(
                field="status",
                message=f"Entries cannot be recorded as {status.value}",
                value=status.value,
            )

        amount = _money(draft.amount, "amount")
        fee = _money(draft.fee_amount, "feeAmount") if draft.fee_amount is not None else ZERO
        net = _money(draft.net_amount, "netAmount") if draft.net_amount is not None else amount - fee
        currency = draft.currency or self._currency

        self._validate(draft, txn_type, amount, fee, currency)

        if draft.connection_id is not None and self.session.get(Connection, draft.connection_id) is None:
            raise ConnectionNotFoundError(str(draft.connection_id))

        if txn_type == TransactionType.LEAD_PAYOUT and draft.lead_id is not None:
            self._reject_paid_lead(draft.lead_id)

        now = self._clock.now()
        entry = Transaction(
            id=uuid4(),
            type=txn_type.value,
            status=status.value,
            amount=amount,
            fee_amount=fee,
            net_amount=net,
            currency=currency,
            from_account=draft.from_account,
            to_account=draft.to_account,
            lead_id=draft.lead_id,
            connection_id=draft.connection_id,
            policy_number=draft.policy_number,
            processor_payment_id=draft.processor_payment_id,
            processor_transfer_id=draft.processor_transfer_id,
            processor_payout_id=draft.processor_payout_id,
            description=draft.description or "",
            transaction_metadata=dict(draft.metadata) if draft.metadata else None,
            created_at=now,
            completed_at=now if status == TransactionStatus.COMPLETED else None,
            failed_at=now if status == TransactionStatus.FAILED else None,
        )
        savepoint = self.session.begin_nested()
        try:
            self.session.add(entry)
            self.session.flush()
        except IntegrityError:
            savepoint.rollback()
            # Concurrent payout for the same lead committed first
            if txn_type == TransactionType.LEAD_PAYOUT and draft.lead_id is not None:
                self._reject_paid_lead(draft.lead_id)
            raise
        savepoint.commit()

        logger.info(
            "transaction_recorded",
            extra={
                "transaction_id": str(entry.id),
                "transaction_type": txn_type.value,
                "status": status.value,
                "amount": str(amount),
                "from_account": str(draft.from_account) if draft.from_account else None,
                "to_account": str(draft.to_account) if draft.to_account else None,
            },
        )
        return TransactionInfo.from_model(entry)

    def complete(
        self,
        transaction_id: UUID,
        processor_payment_id: str | None = None,
        processor_transfer_id: str | None = None,
    ) -> TransactionInfo:
        """
        pending -> completed.

        Raises:
            TransactionNotFoundError: Unknown id.
            InvalidTransitionError: Not pending, or a reversal adjustment.
        """
        values: dict[str, Any] = {
            "status": TransactionStatus.COMPLETED.value,
            "completed_at": self._clock.now(),
        }
        if processor_payment_id is not None:
            values["processor_payment_id"] = processor_payment_id
        if processor_transfer_id is not None:
            values["processor_transfer_id"] = processor_transfer_id

        with LogContext.bind(transaction_id=transaction_id):
            entry = self._transition(transaction_id, TransactionStatus.PENDING, values, "complete")
            logger.info("transaction_completed", extra={"amount": str(to_money(entry.amount))})
        return TransactionInfo.from_model(entry)

    def fail(self, transaction_id: UUID, reason: str) -> TransactionInfo:
        """
        pending -> failed, recording why.

        Raises:
            TransactionNotFoundError: Unknown id.
            InvalidTransitionError: Not pending, or a reversal adjustment.
        """
        reason = _reason(reason)
        values = {
            "status": TransactionStatus.FAILED.value,
            "failed_at": self._clock.now(),
            "failure_reason": reason,
        }
        with LogContext.bind(transaction_id=transaction_id):
            entry = self._transition(transaction_id, TransactionStatus.PENDING, values, "fail")
            logger.warning("transaction_failed", extra={"failure_reason": reason})
        return TransactionInfo.from_model(entry)

    def reverse(self, transaction_id: UUID, reason: str) -> ReversalResult:
        """
        Compensate a completed entry.

        Marks the original ``reversed`` and records an ``adjustment`` with
        ``amount = -original.amount``, ``net_amount = -original.net_amount``
        and the accounts swapped, linked both ways.

        Raises:
            TransactionNotFoundError: Unknown id.
            InvalidTransitionError: The entry is not completed (including
                already reversed).
        """
        reason = _reason(reason)
        reversal_id = uuid4()
        now = self._clock.now()

        with LogContext.bind(transaction_id=transaction_id):
            original = self._transition(
                transaction_id,
                TransactionStatus.COMPLETED,
                {
                    "status": TransactionStatus.REVERSED.value,
                    "reversed_at": now,
                    "reversal_reason": reason,
                    "reversal_transaction_id": reversal_id,
                },
                "reverse",
                allow_reversal_entries=True,
            )

            adjustment = Transaction(
                id=reversal_id,
                type=TransactionType.ADJUSTMENT.value,
                status=TransactionStatus.PENDING.value,
                amount=-to_money(original.amount),
                fee_amount=ZERO,
                net_amount=-to_money(original.net_amount),
                currency=original.currency,
                from_account=original.to_account,
                to_account=original.from_account,
                lead_id=original.lead_id,
                connection_id=original.connection_id,
                description=f"Reversal: {reason}"[:_MAX_DESCRIPTION],
                transaction_metadata={"originalTransactionId": str(original.id)},
                created_at=now,
                original_transaction_id=original.id,
            )
            self.session.add(adjustment)
            self.session.flush()

            logger.info(
                "transaction_reversed",
                extra={
                    "reversal_transaction_id": str(reversal_id),
                    "amount": str(to_money(original.amount)),
                    "reversal_reason": reason,
                },
            )

        return ReversalResult(
            original=TransactionInfo.from_model(original),
            reversal=TransactionInfo.from_model(adjustment),
        )

    # ------------------------------------------------------------------
    # Helpers for the common entry shapes
    # ------------------------------------------------------------------

    def record_lead_payout(
        self,
        provider_id: UUID,
        buyer_id: UUID,
        lead_id: str | None,
        amount: Decimal,
        connection_id: UUID | None = None,
        processor_payment_id: str | None = None,
        processor_transfer_id: str | None = None,
    ) -> TransactionInfo:
        """Buyer pays provider the full rate; the platform takes no fee."""
        return self.record(
            TransactionDraft(
                type=TransactionType.LEAD_PAYOUT,
                amount=amount,
                fee_amount=ZERO,
                from_account=buyer_id,
                to_account=provider_id,
                lead_id=lead_id,
                connection_id=connection_id,
                processor_payment_id=processor_payment_id,
                processor_transfer_id=processor_transfer_id,
                description=f"Lead payout for {lead_id}" if lead_id else "Lead payout",
            )
        )

    def record_policy_commission(
        self,
        provider_id: UUID,
        lead_id: str | None,
        policy_number: str,
        amount: Decimal,
    ) -> TransactionInfo:
        """Commission paid from an external carrier to the provider."""
        return self.record(
            TransactionDraft(
                type=TransactionType.POLICY_COMMISSION,
                amount=amount,
                fee_amount=ZERO,
                from_account=None,
                to_account=provider_id,
                lead_id=lead_id,
                policy_number=policy_number,
                description=f"Commission for policy {policy_number}",
                metadata={"policyNumber": policy_number},
            )
        )

    def record_platform_fee(
        self,
        from_account: UUID,
        amount: Decimal,
        lead_id: str | None = None,
        processor_payment_id: str | None = None,
    ) -> TransactionInfo:
        """Fee paid to the platform (no credited account)."""
        return self.record(
            TransactionDraft(
                type=TransactionType.PLATFORM_FEE,
                amount=amount,
                fee_amount=ZERO,
                from_account=from_account,
                to_account=None,
                lead_id=lead_id,
                processor_payment_id=processor_payment_id,
                description=f"Platform fee for lead {lead_id}" if lead_id else "Platform fee",
            )
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, transaction_id: UUID) -> TransactionInfo:
        info = self._transactions.get(transaction_id)
        if info is None:
            raise TransactionNotFoundError(str(transaction_id))
        return info

    def get_balance(self, account_id: UUID) -> AccountBalance:
        return self._balances.get_balance(account_id)

    def reconcile_balance(self, account_id: UUID) -> AccountBalance:
        """
        Check the aggregate balance against a full replay of history.

        Raises:
            BalanceReconciliationError: On the first disagreeing figure.
        """
        aggregated = self._balances.get_balance(account_id)
        replayed = replay_balance(account_id, self._transactions.balance_history(account_id))

        for name in ("available_balance", "pending_balance", "total_earnings", "total_payouts"):
            if getattr(aggregated, name) != getattr(replayed, name):
                logger.error(
                    "balance_reconciliation_failed",
                    extra={
                        "account_id": str(account_id),
                        "balance_field": name,
                        "aggregated": str(getattr(aggregated, name)),
                        "replayed": str(getattr(replayed, name)),
                    },
                )
                raise BalanceReconciliationError(
                    account_id=str(account_id),
                    field=name,
                    aggregated=getattr(aggregated, name),
                    replayed=getattr(replayed, name),
                )

        logger.debug("balance_reconciled", extra={"account_id": str(account_id)})
        return aggregated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reject_paid_lead(self, lead_id: str) -> None:
        existing = self._transactions.find_lead_payout(lead_id)
        if existing is not None:
            raise StateConflictError(
                entity_type="Transaction",
                entity_id=str(existing.id),
                status=existing.status.value,
                action="record",
                message=f"Lead {lead_id} already has payout {existing.id}",
            )

    def _transition(
        self,
        transaction_id: UUID,
        expected: TransactionStatus,
        values: dict[str, Any],
        action: str,
        allow_reversal_entries: bool = False,
    ) -> Transaction:
        conditions = [Transaction.id == transaction_id, Transaction.status == expected.value]
        if not allow_reversal_entries:
            conditions.append(Transaction.original_transaction_id.is_(None))

        result = self.session.execute(
            update(Transaction)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        entry = self.session.get(Transaction, transaction_id, populate_existing=True)
        if result.rowcount == 1:
            return entry

        if entry is None:
            raise TransactionNotFoundError(str(transaction_id))
        message = None
        if entry.original_transaction_id is not None:
            message = (
                f"Transaction {transaction_id} is the reversal of "
                f"{entry.original_transaction_id} and cannot {action}"
            )
        logger.info(
            "transaction_transition_rejected",
            extra={"action": action, "status": entry.status, "expected_status": expected.value},
        )
        raise InvalidTransitionError(
            entity_type="Transaction",
            entity_id=str(transaction_id),
            status=entry.status,
            action=action,
            message=message,
        )

    def _validate(
        self,
        draft: TransactionDraft,
        txn_type: TransactionType,
        amount: Decimal,
        fee: Decimal,
        currency: str,
    ) -> None:
        match txn_type:
            case TransactionType.LEAD_PAYOUT:
                if amount <= 0:
                    raise ValidationError(
                        field="amount",
                        message="Lead payouts must have an amount greater than 0",
                        bound=ZERO,
                        value=amount,
                    )
                if fee != 0:
                    raise ValidationError(
                        field="feeAmount",
                        message="Lead payouts carry no platform fee",
                        bound=ZERO,
                        value=fee,
                    )
            case TransactionType.ADJUSTMENT:
                if amount == 0:
                    raise ValidationError(
                        field="amount", message="Adjustments must be non-zero", value=amount
                    )
            case TransactionType.POLICY_COMMISSION | TransactionType.PLATFORM_FEE | TransactionType.REFUND:
                if amount <= 0:
                    raise ValidationError(
                        field="amount",
                        message=f"{txn_type.value} amount must be greater than 0",
                        bound=ZERO,
                        value=amount,
                    )

        if txn_type == TransactionType.PLATFORM_FEE and draft.to_account is not None:
            raise ValidationError(
                field="toAccount",
                message="Platform fees are paid to the platform; toAccount must be empty",
                value=draft.to_account,
            )
        if fee < 0:
            raise ValidationError(field="feeAmount", message="feeAmount must be >= 0", bound=ZERO, value=fee)
        if draft.from_account is not None and draft.from_account == draft.to_account:
            raise ValidationError(
                field="toAccount",
                message="fromAccount and toAccount must differ",
                value=draft.to_account,
            )
        if not _CURRENCY_CODE.match(currency):
            raise ValidationError(
                field="currency", message="currency must be a 3-letter ISO code", value=currency
            )
        if draft.description and len(draft.description) > _MAX_DESCRIPTION:
            raise ValidationError(
                field="description",
                message=f"description may not exceed {_MAX_DESCRIPTION} characters",
                bound=_MAX_DESCRIPTION,
                value=len(draft.description),
            )


def _enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            field=field_name,
            message=f"{field_name} must be one of {allowed}",
            bound=allowed,
            value=value,
        ) from None


def _money(value: Any, field_name: str) -> Decimal:
    amount = parse_amount(value, field_name)
    if decimal_places(amount) > 2:
        raise ValidationError(
            field=field_name,
            message=f"{field_name} allows at most 2 decimal places",
            bound=2,
            value=amount,
        )
    return to_money(amount)


def _reason(reason: str) -> str:
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError(field="reason", message="A reason is required")
    if len(reason) > _MAX_DESCRIPTION:
        raise ValidationError(
            field="reason",
            message=f"reason may not exceed {_MAX_DESCRIPTION} characters",
            bound=_MAX_DESCRIPTION,
            value=len(reason),
        )
    return reason.strip()
