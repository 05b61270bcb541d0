"""
End-to-end: provider and buyer negotiate, the provider submits leads up
to the weekly cap, payouts settle, one is reversed, and the week rolls
over.  Everything goes through LeadPayPlatform with committed units of
work.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from leadpay_config import PlatformConfig
from leadpay_kernel.domain.actors import Actor
from leadpay_kernel.domain.dtos import TransactionStatus, TransactionType
from leadpay_kernel.domain.lead_caps import format_cap_status
from leadpay_kernel.domain.negotiation import ConnectionStatus, RequestStatus
from leadpay_kernel.exceptions import CapExceededError, InvalidTransitionError
from leadpay_services.notifications import NotificationDispatcher
from leadpay_services.payouts import ProcessorReceipt
from leadpay_services.platform import LeadPayPlatform


class CountingProcessor:
    def __init__(self):
        self.paid = 0

    def execute_payout(self, transaction):
        self.paid += 1
        return ProcessorReceipt(payment_id=f"pi_{self.paid}", transfer_id=f"tr_{self.paid}")


@pytest.fixture
def platform(session_factory, deterministic_clock):
    platform = LeadPayPlatform(
        session_factory,
        config=PlatformConfig(config_id="e2e", version=1),
        clock=deterministic_clock,
        dispatcher=NotificationDispatcher(),
        processor=CountingProcessor(),
    )
    yield platform
    platform.dispatcher.shutdown()


def test_full_connection_lifecycle(platform, deterministic_clock):
    provider = Actor.provider(uuid4())
    buyer = Actor.buyer(uuid4())

    # Negotiate
    request = platform.request_connection(provider, buyer.account_id, message="Auto leads in CA")
    assert request.status == RequestStatus.PENDING_BUYER_REVIEW

    proposed = platform.set_terms(
        buyer,
        request.id,
        {
            "ratePerLead": "75",
            "paymentTiming": "per_lead",
            "leadTypes": ["auto"],
            "terminationNoticeDays": 14,
            "weeklyLeadCap": 2,
        },
    )
    assert proposed.status == RequestStatus.PENDING_PROVIDER_ACCEPT
    assert [r.id for r in platform.pending_terms_for_provider(provider.account_id)] == [request.id]

    connection = platform.accept_terms(provider, request.id)
    assert connection.status == ConnectionStatus.ACTIVE
    assert connection.terms.weekly_limit == 2

    # Two leads fit the weekly cap, the third does not
    first = platform.check_and_record_lead_submission(provider, connection.id, "lead-1")
    second = platform.check_and_record_lead_submission(provider, connection.id, "lead-2")
    assert second.cap_status.weekly_remaining == 0
    with pytest.raises(CapExceededError) as exc_info:
        platform.check_and_record_lead_submission(provider, connection.id, "lead-3")
    assert "Resets Monday 2024-01-08" in exc_info.value.reset_hint

    balance = platform.get_balance(provider.account_id)
    assert balance.pending_balance == Decimal("150.00")
    assert balance.available_balance == Decimal("0.00")

    # Settle both payouts
    for result in (first, second):
        settled = platform.settle_payout(result.transaction.id)
        assert settled.status == TransactionStatus.COMPLETED
    assert platform.reconcile_balance(provider.account_id).available_balance == Decimal("150.00")
    assert platform.reconcile_balance(buyer.account_id).total_payouts == Decimal("150.00")

    # Reverse one payout
    reversal = platform.reverse_transaction(first.transaction.id, "lead was a duplicate")
    assert reversal.reversal.type == TransactionType.ADJUSTMENT
    assert reversal.reversal.amount == Decimal("-75.00")
    assert platform.reconcile_balance(provider.account_id).available_balance == Decimal("75.00")
    with pytest.raises(InvalidTransitionError):
        platform.reverse_transaction(first.transaction.id, "again")

    # The next Monday opens a new weekly window
    deterministic_clock.set_time(datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc))
    third = platform.check_and_record_lead_submission(provider, connection.id, "lead-3")
    assert third.connection.stats.leads_this_week == 1
    assert third.connection.stats.total_leads == 3
    assert third.connection.stats.total_paid == Decimal("225.00")
    assert format_cap_status(
        third.connection.terms.lead_caps,
        third.connection.stats.leads_this_week,
        third.connection.stats.leads_this_month,
    ) == "1/2 weekly"

    # Buyer raises the rate, then ends the relationship
    updated = platform.update_terms(buyer, connection.id, {"ratePerLead": "90", "weeklyLeadCap": 5})
    assert updated.stats.total_leads == 3
    fourth = platform.check_and_record_lead_submission(provider, connection.id, "lead-4")
    assert fourth.transaction.amount == Decimal("90.00")

    ended = platform.terminate_connection(buyer, connection.id, reason="Budget exhausted")
    assert ended.status == ConnectionStatus.TERMINATED
    assert platform.active_connections_for_account(provider.account_id) == []
    with pytest.raises(InvalidTransitionError):
        platform.check_and_record_lead_submission(provider, connection.id, "lead-5")

    history = platform.transactions_for_account(provider.account_id)
    assert len(history) == 5  # four payouts and one reversal adjustment
