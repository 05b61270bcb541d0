"""
PayoutSettlementService -- drives pending ledger entries through the
payment processor.

Responsibility:
    Sends a pending entry to the external processor and completes or fails
    it in the ledger according to the processor's answer.  Also applies
    asynchronous processor notifications (webhooks) to the ledger.

Architecture position:
    Services -- outer shell.  Uses LedgerService on a caller-owned session.

Failure modes:
    - PaymentProcessorError: the processor rejected the payout.  The entry
      is marked failed first and the error is re-raised, never swallowed.
    - TransactionNotFoundError / InvalidTransitionError from the ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable
from uuid import UUID

from leadpay_kernel.domain.dtos import TransactionInfo, TransactionStatus
from leadpay_kernel.exceptions import InvalidTransitionError, PaymentProcessorError
from leadpay_kernel.logging_config import LogContext, get_logger
from leadpay_kernel.services.ledger_service import LedgerService

logger = get_logger("services.payouts")


@dataclass(frozen=True)
class ProcessorReceipt:
    """What the processor returns for an accepted payout."""

    payment_id: str
    transfer_id: str | None = None


@runtime_checkable
class PaymentProcessor(Protocol):
    """Client of the external payment processor."""

    def execute_payout(self, transaction: TransactionInfo) -> ProcessorReceipt:
        """Move the money for ``transaction``.

        Raises:
            PaymentProcessorError: The processor rejected the payout.
        """
        ...


class PayoutSettlementService:
    """
    Settles pending ledger entries against the payment processor.

    Contract:
        Flushes through LedgerService; the caller owns the transaction.
    """

    def __init__(self, ledger: LedgerService, processor: PaymentProcessor):
        self._ledger = ledger
        self._processor = processor

    def settle(self, transaction_id: UUID) -> TransactionInfo:
        """
        Pay out one pending entry.

        Raises:
            InvalidTransitionError: The entry is not pending.
            PaymentProcessorError: After the entry has been marked failed.
        """
        with LogContext.bind(transaction_id=transaction_id):
            entry = self._ledger.get(transaction_id)
            if entry.status != TransactionStatus.PENDING or entry.is_reversal:
                raise InvalidTransitionError(
                    entity_type="Transaction",
                    entity_id=str(transaction_id),
                    status=entry.status.value,
                    action="settle",
                )

            try:
                receipt = self._processor.execute_payout(entry)
            except PaymentProcessorError as exc:
                logger.warning(
                    "payout_rejected",
                    extra={"processor_code": exc.processor_code},
                )
                self._ledger.fail(transaction_id, str(exc))
                raise

            logger.info("payout_settled", extra={"processor_payment_id": receipt.payment_id})
            return self._ledger.complete(
                transaction_id,
                processor_payment_id=receipt.payment_id,
                processor_transfer_id=receipt.transfer_id,
            )

    def handle_processor_notification(
        self,
        transaction_id: UUID,
        succeeded: bool,
        processor_payment_id: str | None = None,
        failure_reason: str | None = None,
    ) -> TransactionInfo:
        """Apply an asynchronous processor outcome to a pending entry."""
        if succeeded:
            return self._ledger.complete(transaction_id, processor_payment_id=processor_payment_id)
        return self._ledger.fail(transaction_id, failure_reason or "Payment failed")
