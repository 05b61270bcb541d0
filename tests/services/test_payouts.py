"""PayoutSettlementService against a scripted payment processor."""

from decimal import Decimal
from uuid import uuid4

import pytest

from leadpay_kernel.domain.dtos import TransactionInfo, TransactionStatus
from leadpay_kernel.exceptions import InvalidTransitionError, PaymentProcessorError
from leadpay_services.payouts import PaymentProcessor, PayoutSettlementService, ProcessorReceipt


class ScriptedProcessor:
    """Approves every payout unless told to decline."""

    def __init__(self, decline: bool = False):
        self.decline = decline
        self.calls: list[TransactionInfo] = []

    def execute_payout(self, transaction: TransactionInfo) -> ProcessorReceipt:
        self.calls.append(transaction)
        if self.decline:
            raise PaymentProcessorError(
                str(transaction.id), "insufficient funds", processor_code="card_declined"
            )
        return ProcessorReceipt(payment_id=f"pi_{len(self.calls)}", transfer_id="tr_1")


@pytest.fixture
def pending_payout(ledger):
    return ledger.record_lead_payout(
        provider_id=uuid4(), buyer_id=uuid4(), lead_id="lead-1", amount=Decimal("75")
    )


def test_scripted_processor_satisfies_protocol():
    assert isinstance(ScriptedProcessor(), PaymentProcessor)


class TestSettle:
    def test_success_completes_with_processor_ids(self, ledger, pending_payout, captured_logs):
        processor = ScriptedProcessor()

        settled = PayoutSettlementService(ledger, processor).settle(pending_payout.id)

        assert settled.status == TransactionStatus.COMPLETED
        assert settled.processor_payment_id == "pi_1"
        assert settled.processor_transfer_id == "tr_1"
        assert processor.calls[0].amount == Decimal("75.00")
        assert "payout_settled" in [r["message"] for r in captured_logs()]

    def test_rejection_fails_entry_and_reraises(self, ledger, pending_payout, captured_logs):
        service = PayoutSettlementService(ledger, ScriptedProcessor(decline=True))

        with pytest.raises(PaymentProcessorError) as exc_info:
            service.settle(pending_payout.id)

        assert exc_info.value.processor_code == "card_declined"
        failed = ledger.get(pending_payout.id)
        assert failed.status == TransactionStatus.FAILED
        assert "insufficient funds" in failed.failure_reason

        rejected = next(r for r in captured_logs() if r["message"] == "payout_rejected")
        assert rejected["transaction_id"] == str(pending_payout.id)

    def test_only_pending_entries_settle(self, ledger, pending_payout):
        ledger.complete(pending_payout.id)
        processor = ScriptedProcessor()

        with pytest.raises(InvalidTransitionError):
            PayoutSettlementService(ledger, processor).settle(pending_payout.id)
        assert processor.calls == []

    def test_reversal_entries_never_reach_processor(self, ledger, pending_payout):
        ledger.complete(pending_payout.id)
        reversal = ledger.reverse(pending_payout.id, "chargeback").reversal
        processor = ScriptedProcessor()

        with pytest.raises(InvalidTransitionError):
            PayoutSettlementService(ledger, processor).settle(reversal.id)
        assert processor.calls == []


class TestProcessorNotifications:
    def test_success_notification(self, ledger, pending_payout):
        service = PayoutSettlementService(ledger, ScriptedProcessor())
        done = service.handle_processor_notification(
            pending_payout.id, succeeded=True, processor_payment_id="pi_async"
        )
        assert done.status == TransactionStatus.COMPLETED
        assert done.processor_payment_id == "pi_async"

    def test_failure_notification_default_reason(self, ledger, pending_payout):
        service = PayoutSettlementService(ledger, ScriptedProcessor())
        failed = service.handle_processor_notification(pending_payout.id, succeeded=False)
        assert failed.failure_reason == "Payment failed"

    def test_late_notification_for_settled_entry(self, ledger, pending_payout):
        service = PayoutSettlementService(ledger, ScriptedProcessor())
        service.settle(pending_payout.id)
        with pytest.raises(InvalidTransitionError):
            service.handle_processor_notification(pending_payout.id, succeeded=False)
