"""
ConnectionRegistry: negotiation transitions, party and role checks, and
the cap-gated lead submission path.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from leadpay_kernel.domain.actors import Actor, Role
from leadpay_kernel.domain.dtos import TransactionStatus, TransactionType
from leadpay_kernel.domain.negotiation import ConnectionStatus, RequestStatus
from leadpay_kernel.exceptions import (
    CapExceededError,
    ConnectionNotFoundError,
    ConnectionRequestNotFoundError,
    InvalidTransitionError,
    NotAPartyError,
    RoleNotPermittedError,
    StateConflictError,
    ValidationError,
)
from leadpay_kernel.services.connection_registry import ConnectionRegistry
from tests.conftest import make_terms


def messages(captured_logs) -> list[str]:
    return [r["message"] for r in captured_logs()]


# =============================================================================
# request_connection
# =============================================================================


class TestRequestConnection:
    def test_provider_request_awaits_buyer_review(self, registry, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id, message="Hi")

        assert request.status == RequestStatus.PENDING_BUYER_REVIEW
        assert request.initiator == Role.PROVIDER
        assert request.provider_id == provider.account_id
        assert request.buyer_id == buyer.account_id
        assert request.proposed_terms is None
        assert request.message == "Hi"

    def test_buyer_invitation_carries_terms(self, registry, provider, buyer):
        request = registry.request_connection(
            buyer, provider.account_id, terms=make_terms("80", weekly=10)
        )

        assert request.status == RequestStatus.PENDING_PROVIDER_ACCEPT
        assert request.proposed_terms.rate_per_lead == Decimal("80")
        assert request.provider_id == provider.account_id

    def test_buyer_invitation_terms_validated(self, registry, provider, buyer):
        with pytest.raises(ValidationError) as exc_info:
            registry.request_connection(buyer, provider.account_id, terms=make_terms("600"))
        assert exc_info.value.bound == Decimal("500")

    def test_buyer_invitation_without_terms_uses_defaults(
        self, session, deterministic_clock, provider, buyer
    ):
        registry = ConnectionRegistry(
            session, clock=deterministic_clock, default_terms=make_terms("25")
        )
        request = registry.request_connection(buyer, provider.account_id)
        assert request.proposed_terms.rate_per_lead == Decimal("25")

    def test_buyer_invitation_without_terms_or_defaults(self, registry, provider, buyer):
        with pytest.raises(ValidationError) as exc_info:
            registry.request_connection(buyer, provider.account_id)
        assert exc_info.value.field == "terms"

    def test_provider_may_not_propose_terms(self, registry, provider, buyer):
        with pytest.raises(ValidationError):
            registry.request_connection(provider, buyer.account_id, terms=make_terms())

    def test_self_request_rejected(self, registry, provider):
        with pytest.raises(ValidationError):
            registry.request_connection(provider, provider.account_id)

    def test_same_role_rejected_when_counterparty_role_known(self, registry, provider, outsider):
        with pytest.raises(ValidationError):
            registry.request_connection(
                provider, outsider.account_id, counterparty_role=Role.PROVIDER
            )

    def test_message_length(self, registry, provider, buyer):
        with pytest.raises(ValidationError) as exc_info:
            registry.request_connection(provider, buyer.account_id, message="x" * 501)
        assert exc_info.value.bound == 500
        assert registry.request_connection(provider, buyer.account_id, message="x" * 500)

    def test_repeat_request_returns_existing(self, registry, provider, buyer, captured_logs):
        first = registry.request_connection(provider, buyer.account_id)
        second = registry.request_connection(provider, buyer.account_id)
        from_buyer = registry.request_connection(buyer, provider.account_id, terms=make_terms())

        assert first.id == second.id == from_buyer.id
        assert from_buyer.status == RequestStatus.PENDING_BUYER_REVIEW
        assert messages(captured_logs).count("connection_request_reused") == 2

    def test_new_request_allowed_after_rejection(self, registry, provider, buyer):
        first = registry.request_connection(provider, buyer.account_id)
        registry.reject_request(buyer, first.id)

        second = registry.request_connection(provider, buyer.account_id)
        assert second.id != first.id
        assert second.status == RequestStatus.PENDING_BUYER_REVIEW

    def test_active_connection_blocks_new_request(
        self, registry, active_connection, provider, buyer
    ):
        active_connection()
        with pytest.raises(StateConflictError):
            registry.request_connection(provider, buyer.account_id)

    def test_creation_logged_with_actor(self, registry, provider, buyer, captured_logs):
        request = registry.request_connection(provider, buyer.account_id)

        record = next(r for r in captured_logs() if r["message"] == "connection_request_created")
        assert record["request_id"] == str(request.id)
        assert record["actor_id"] == str(provider.account_id)


# =============================================================================
# Negotiation transitions
# =============================================================================


class TestNegotiation:
    def test_set_terms(self, registry, provider, buyer, deterministic_clock):
        request = registry.request_connection(provider, buyer.account_id)
        deterministic_clock.advance(60)

        updated = registry.set_terms(buyer, request.id, make_terms("75", weekly=2))

        assert updated.status == RequestStatus.PENDING_PROVIDER_ACCEPT
        assert updated.proposed_terms.weekly_limit == 2
        assert updated.reviewed_at == deterministic_clock.now()

    def test_set_terms_accepts_dict(self, registry, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id)
        updated = registry.set_terms(buyer, request.id, {"ratePerLead": "40"})
        assert updated.proposed_terms.rate_per_lead == Decimal("40")

    def test_invalid_terms_leave_request_unchanged(
        self, registry, connection_selector, provider, buyer
    ):
        request = registry.request_connection(provider, buyer.account_id)

        with pytest.raises(ValidationError) as exc_info:
            registry.set_terms(buyer, request.id, make_terms("4.99"))

        assert str(exc_info.value) == "Minimum rate is $5 per lead"
        assert connection_selector.get_request(request.id).status == RequestStatus.PENDING_BUYER_REVIEW

    def test_provider_cannot_set_terms(self, registry, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id)
        with pytest.raises(RoleNotPermittedError):
            registry.set_terms(provider, request.id, make_terms())

    def test_reject(self, registry, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id)
        assert registry.reject_request(buyer, request.id).status == RequestStatus.REJECTED_BY_BUYER

    def test_decline(self, registry, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id)
        registry.set_terms(buyer, request.id, make_terms())

        declined = registry.decline_terms(provider, request.id)

        assert declined.status == RequestStatus.DECLINED_BY_PROVIDER
        assert declined.responded_at is not None

    def test_accept_creates_connection(self, registry, connection_selector, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id)
        registry.set_terms(buyer, request.id, make_terms("75", weekly=2))

        connection = registry.accept_terms(provider, request.id)

        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.request_id == request.id
        assert connection.terms.rate_per_lead == Decimal("75")
        assert connection.stats.total_leads == 0
        assert connection.stats.total_paid == Decimal("0.00")
        assert connection.stats.week_start_date == "2024-01-01"
        assert connection.stats.month_start_date == "2024-01-01"
        assert connection.version == 1

        stored = connection_selector.get_request(request.id)
        assert stored.status == RequestStatus.ACCEPTED
        assert stored.connection_id == connection.id

    def test_accept_before_terms(self, registry, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id)
        with pytest.raises(InvalidTransitionError):
            registry.accept_terms(provider, request.id)

    def test_buyer_cannot_accept(self, registry, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id)
        registry.set_terms(buyer, request.id, make_terms())
        with pytest.raises(RoleNotPermittedError):
            registry.accept_terms(buyer, request.id)

    def test_accept_twice(self, registry, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id)
        registry.set_terms(buyer, request.id, make_terms())
        registry.accept_terms(provider, request.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            registry.accept_terms(provider, request.id)
        assert exc_info.value.status == "accepted"

    @pytest.mark.parametrize("close", ["reject", "decline"])
    def test_closed_requests_refuse_everything(self, registry, provider, buyer, close):
        request = registry.request_connection(provider, buyer.account_id)
        if close == "reject":
            registry.reject_request(buyer, request.id)
        else:
            registry.set_terms(buyer, request.id, make_terms())
            registry.decline_terms(provider, request.id)

        with pytest.raises(InvalidTransitionError):
            registry.set_terms(buyer, request.id, make_terms())
        with pytest.raises(InvalidTransitionError):
            registry.accept_terms(provider, request.id)
        with pytest.raises(InvalidTransitionError):
            registry.reject_request(buyer, request.id)

    def test_non_party_refused(self, registry, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id)
        stranger = Actor.buyer(uuid4())

        with pytest.raises(NotAPartyError) as exc_info:
            registry.set_terms(stranger, request.id, make_terms())
        assert exc_info.value.account_id == str(stranger.account_id)

    def test_party_in_wrong_role_is_not_a_party(self, registry, provider, buyer):
        request = registry.request_connection(provider, buyer.account_id)
        # The provider's account acting as a buyer is not this request's buyer
        with pytest.raises(NotAPartyError):
            registry.set_terms(Actor.buyer(provider.account_id), request.id, make_terms())

    def test_unknown_request(self, registry, buyer):
        with pytest.raises(ConnectionRequestNotFoundError):
            registry.reject_request(buyer, uuid4())

    def test_transition_logged(self, registry, provider, buyer, captured_logs):
        request = registry.request_connection(provider, buyer.account_id)
        registry.set_terms(buyer, request.id, make_terms())

        record = next(r for r in captured_logs() if r["message"] == "connection_request_set_terms")
        assert record["from_status"] == "pending_buyer_review"
        assert record["to_status"] == "pending_provider_accept"
        assert record["request_id"] == str(request.id)

    def test_terminal_transition_logs_prior_status(self, registry, provider, buyer, captured_logs):
        request = registry.request_connection(provider, buyer.account_id)
        registry.reject_request(buyer, request.id)

        record = next(r for r in captured_logs() if r["message"] == "connection_request_reject")
        assert record["from_status"] == "pending_buyer_review"
        assert record["to_status"] == "rejected_by_buyer"


# =============================================================================
# Active connections
# =============================================================================


class TestActiveConnection:
    def test_update_terms_keeps_stats(self, registry, active_connection, provider, buyer):
        connection = active_connection()
        registry.check_and_record_lead_submission(provider, connection.id, "lead-1")

        updated = registry.update_terms(buyer, connection.id, make_terms("90", weekly=10))

        assert updated.terms.rate_per_lead == Decimal("90")
        assert updated.stats.total_leads == 1
        assert updated.stats.leads_this_week == 1
        assert updated.terms_updated_at is not None
        assert updated.version == connection.version + 2

    def test_update_terms_validated(self, registry, active_connection, buyer, connection_selector):
        connection = active_connection()
        with pytest.raises(ValidationError):
            registry.update_terms(buyer, connection.id, make_terms("501"))
        assert connection_selector.get_connection(connection.id).version == connection.version

    def test_provider_cannot_update_terms(self, registry, active_connection, provider):
        connection = active_connection()
        with pytest.raises(RoleNotPermittedError):
            registry.update_terms(provider, connection.id, make_terms("90"))

    @pytest.mark.parametrize("who", ["provider", "buyer"])
    def test_either_party_terminates(self, registry, active_connection, provider, buyer, who):
        connection = active_connection()
        actor = provider if who == "provider" else buyer

        terminated = registry.terminate_connection(actor, connection.id, reason="moving on")

        assert terminated.status == ConnectionStatus.TERMINATED
        assert terminated.terminated_by == actor.account_id
        assert terminated.termination_reason == "moving on"

    def test_terminated_is_final(self, registry, active_connection, provider, buyer):
        connection = active_connection()
        registry.terminate_connection(buyer, connection.id)

        with pytest.raises(InvalidTransitionError):
            registry.terminate_connection(provider, connection.id)
        with pytest.raises(InvalidTransitionError):
            registry.update_terms(buyer, connection.id, make_terms())

    def test_pair_can_reconnect_after_termination(
        self, registry, active_connection, provider, buyer
    ):
        first = active_connection()
        registry.terminate_connection(provider, first.id)

        second = active_connection()
        assert second.id != first.id
        assert second.is_active

    def test_termination_reason_length(self, registry, active_connection, provider):
        connection = active_connection()
        with pytest.raises(ValidationError):
            registry.terminate_connection(provider, connection.id, reason="r" * 501)

    def test_non_party_cannot_terminate(self, registry, active_connection, outsider):
        connection = active_connection()
        with pytest.raises(NotAPartyError):
            registry.terminate_connection(outsider, connection.id)

    def test_unknown_connection(self, registry, provider):
        with pytest.raises(ConnectionNotFoundError):
            registry.terminate_connection(provider, uuid4())


# =============================================================================
# Lead submission
# =============================================================================


class TestLeadSubmission:
    def test_records_payout_and_moves_counters(
        self, registry, active_connection, provider, buyer, balance_selector
    ):
        connection = active_connection(make_terms("75", weekly=2))

        result = registry.check_and_record_lead_submission(provider, connection.id, "lead-1")

        assert result.allowed and not result.duplicate
        assert result.transaction.type == TransactionType.LEAD_PAYOUT
        assert result.transaction.status == TransactionStatus.PENDING
        assert result.transaction.amount == Decimal("75.00")
        assert result.transaction.from_account == buyer.account_id
        assert result.transaction.to_account == provider.account_id
        assert result.transaction.connection_id == connection.id
        assert result.connection.stats.total_leads == 1
        assert result.connection.stats.total_paid == Decimal("75.00")
        assert result.cap_status.weekly_remaining == 1
        assert balance_selector.get_balance(provider.account_id).pending_balance == Decimal("75.00")

    def test_cap_denies_third_lead(self, registry, active_connection, provider, captured_logs):
        connection = active_connection(make_terms("75", weekly=2))
        registry.check_and_record_lead_submission(provider, connection.id, "lead-1")
        registry.check_and_record_lead_submission(provider, connection.id, "lead-2")

        with pytest.raises(CapExceededError) as exc_info:
            registry.check_and_record_lead_submission(provider, connection.id, "lead-3")

        err = exc_info.value
        assert err.weekly_remaining == 0
        assert err.monthly_remaining is None
        assert "Resets Monday 2024-01-08" in err.reset_hint
        assert "lead_submission_denied" in messages(captured_logs)

    def test_denial_changes_nothing(
        self, registry, active_connection, provider, connection_selector, transaction_selector
    ):
        connection = active_connection(make_terms(weekly=1))
        registry.check_and_record_lead_submission(provider, connection.id, "lead-1")
        before = connection_selector.get_connection(connection.id)

        with pytest.raises(CapExceededError):
            registry.check_and_record_lead_submission(provider, connection.id, "lead-2")

        assert connection_selector.get_connection(connection.id) == before
        assert transaction_selector.find_lead_payout("lead-2") is None

    def test_monday_resets_weekly_count(
        self, registry, active_connection, provider, deterministic_clock
    ):
        connection = active_connection(make_terms(weekly=1, monthly=10))
        registry.check_and_record_lead_submission(provider, connection.id, "lead-1")
        with pytest.raises(CapExceededError):
            registry.check_and_record_lead_submission(provider, connection.id, "lead-2")

        deterministic_clock.set_time(datetime(2024, 1, 8, 0, 0, tzinfo=timezone.utc))
        result = registry.check_and_record_lead_submission(provider, connection.id, "lead-2")

        assert result.connection.stats.leads_this_week == 1
        assert result.connection.stats.leads_this_month == 2
        assert result.connection.stats.week_start_date == "2024-01-08"

    def test_monthly_cap(self, registry, active_connection, provider, deterministic_clock):
        connection = active_connection(make_terms(monthly=2))
        registry.check_and_record_lead_submission(provider, connection.id)
        deterministic_clock.advance_days(7)
        registry.check_and_record_lead_submission(provider, connection.id)
        deterministic_clock.advance_days(7)

        with pytest.raises(CapExceededError) as exc_info:
            registry.check_and_record_lead_submission(provider, connection.id)
        assert "Resets 2024-02-01" in exc_info.value.reset_hint

    def test_uncapped_connection(self, registry, active_connection, provider):
        connection = active_connection()
        for i in range(5):
            result = registry.check_and_record_lead_submission(provider, connection.id, f"lead-{i}")
        assert result.connection.stats.total_leads == 5
        assert result.cap_status.weekly_remaining is None

    def test_duplicate_lead_is_idempotent(self, registry, active_connection, provider):
        connection = active_connection(make_terms(weekly=5))
        first = registry.check_and_record_lead_submission(provider, connection.id, "lead-1")

        again = registry.check_and_record_lead_submission(provider, connection.id, "lead-1")

        assert again.duplicate
        assert again.transaction.id == first.transaction.id
        assert again.connection.stats.total_leads == 1

    def test_lead_paid_under_another_connection(
        self, registry, active_connection, provider, buyer
    ):
        first = active_connection()
        other_buyer = Actor.buyer(uuid4())
        second = active_connection(buyer_actor=other_buyer)
        registry.check_and_record_lead_submission(provider, first.id, "lead-1")

        with pytest.raises(StateConflictError):
            registry.check_and_record_lead_submission(provider, second.id, "lead-1")

    def test_buyer_cannot_submit(self, registry, active_connection, buyer):
        connection = active_connection()
        with pytest.raises(RoleNotPermittedError):
            registry.check_and_record_lead_submission(buyer, connection.id, "lead-1")

    def test_non_party_cannot_submit(self, registry, active_connection, outsider):
        connection = active_connection()
        with pytest.raises(NotAPartyError):
            registry.check_and_record_lead_submission(outsider, connection.id, "lead-1")

    def test_terminated_connection_refuses_leads(self, registry, active_connection, provider):
        connection = active_connection()
        registry.terminate_connection(provider, connection.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            registry.check_and_record_lead_submission(provider, connection.id, "lead-1")
        assert exc_info.value.action == "submit_lead"

    def test_get_cap_status_is_read_only(
        self, registry, active_connection, provider, connection_selector
    ):
        connection = active_connection(make_terms(weekly=3, monthly=5))
        registry.check_and_record_lead_submission(provider, connection.id)
        before = connection_selector.get_connection(connection.id)

        status = registry.get_cap_status(connection.id)

        assert (status.weekly_remaining, status.monthly_remaining) == (2, 4)
        assert connection_selector.get_connection(connection.id) == before

    def test_submission_logged(self, registry, active_connection, provider, captured_logs):
        connection = active_connection()
        registry.check_and_record_lead_submission(provider, connection.id, "lead-9")

        record = next(r for r in captured_logs() if r["message"] == "lead_submission_recorded")
        assert record["lead_id"] == "lead-9"
        assert record["connection_id"] == str(connection.id)
