"""Read-side queries: balances, ledger history and report, dashboards."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from leadpay_kernel.domain.balances import replay_balance
from leadpay_kernel.domain.negotiation import RequestStatus
from tests.conftest import make_terms


class TestBalanceSelector:
    @settings(
        max_examples=25,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(
        st.lists(
            st.tuples(
                st.decimals(min_value=Decimal("5"), max_value=Decimal("500"), places=2),
                st.sampled_from(["pending", "complete", "fail", "reverse"]),
            ),
            max_size=8,
        )
    )
    def test_aggregate_equals_replay(self, ledger, balance_selector, transaction_selector, steps):
        buyer_id, provider_id = uuid4(), uuid4()
        for amount, outcome in steps:
            entry = ledger.record_lead_payout(
                provider_id=provider_id, buyer_id=buyer_id, lead_id=None, amount=amount
            )
            if outcome == "complete":
                ledger.complete(entry.id)
            elif outcome == "fail":
                ledger.fail(entry.id, "declined")
            elif outcome == "reverse":
                ledger.complete(entry.id)
                ledger.reverse(entry.id, "chargeback")

        for account in (buyer_id, provider_id):
            assert balance_selector.get_balance(account) == replay_balance(
                account, transaction_selector.balance_history(account)
            )


class TestTransactionSelector:
    def test_account_history_newest_first(
        self, ledger, transaction_selector, deterministic_clock
    ):
        buyer_id, provider_id = uuid4(), uuid4()
        first = ledger.record_lead_payout(provider_id, buyer_id, "lead-1", Decimal("10"))
        deterministic_clock.advance(60)
        second = ledger.record_lead_payout(provider_id, buyer_id, "lead-2", Decimal("20"))

        history = transaction_selector.list_by_account(provider_id)

        assert [t.id for t in history] == [second.id, first.id]
        assert transaction_selector.list_by_account(provider_id, limit=1)[0].id == second.id

    def test_find_lead_payout(self, ledger, transaction_selector):
        entry = ledger.record_lead_payout(uuid4(), uuid4(), "lead-7", Decimal("10"))
        assert transaction_selector.find_lead_payout("lead-7").id == entry.id
        assert transaction_selector.find_lead_payout("lead-8") is None

    def test_list_by_type_and_connection(self, registry, active_connection, provider,
                                         transaction_selector):
        connection = active_connection()
        registry.check_and_record_lead_submission(provider, connection.id, "lead-1")

        assert len(transaction_selector.list_by_connection(connection.id)) == 1
        assert transaction_selector.list_by_type("lead_payout")[0].lead_id == "lead-1"

    def test_report(self, ledger, transaction_selector, deterministic_clock):
        start = deterministic_clock.now()
        buyer_id, provider_id = uuid4(), uuid4()
        ledger.complete(ledger.record_lead_payout(provider_id, buyer_id, None, Decimal("50")).id)
        ledger.complete(
            ledger.record_policy_commission(provider_id, None, "POL-1", Decimal("200")).id
        )
        fee = ledger.record_platform_fee(buyer_id, Decimal("5"))
        ledger.complete(fee.id)
        ledger.fail(ledger.record_lead_payout(provider_id, buyer_id, None, Decimal("30")).id, "no")
        deterministic_clock.advance(60)

        report = transaction_selector.report(start, deterministic_clock.now())

        assert report.total_transactions == 4
        assert report.payouts == Decimal("50.00")
        assert report.commissions == Decimal("200.00")
        assert report.platform_fees == Decimal("5.00")
        assert report.total_volume == Decimal("255.00")
        assert report.by_status["completed"] == 3
        assert report.by_status["failed"] == 1

    def test_report_excludes_other_periods(self, ledger, transaction_selector, deterministic_clock):
        ledger.record_lead_payout(uuid4(), uuid4(), None, Decimal("50"))
        deterministic_clock.advance_days(2)
        start = deterministic_clock.now()

        report = transaction_selector.report(start, start + timedelta(days=1))

        assert report.total_transactions == 0
        assert report.total_volume == Decimal("0.00")


class TestConnectionSelector:
    def test_buyer_and_provider_queues(self, registry, connection_selector, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id)
        assert [r.id for r in connection_selector.pending_requests_for_buyer(buyer.account_id)] == [
            request.id
        ]
        assert connection_selector.pending_terms_for_provider(provider.account_id) == []

        registry.set_terms(buyer, request.id, make_terms())

        assert connection_selector.pending_requests_for_buyer(buyer.account_id) == []
        pending = connection_selector.pending_terms_for_provider(provider.account_id)
        assert pending[0].status == RequestStatus.PENDING_PROVIDER_ACCEPT

    def test_active_excludes_terminated(
        self, registry, active_connection, connection_selector, provider
    ):
        connection = active_connection()
        assert [c.id for c in connection_selector.active_connections_for_account(provider.account_id)] == [
            connection.id
        ]

        registry.terminate_connection(provider, connection.id)

        assert connection_selector.active_connections_for_account(provider.account_id) == []
        assert len(connection_selector.connections_for_account(provider.account_id)) == 1
        assert len(connection_selector.requests_for_account(provider.account_id)) == 1

    def test_missing_entities(self, connection_selector):
        assert connection_selector.get_request(uuid4()) is None
        assert connection_selector.get_connection(uuid4()) is None
