"""
The negotiation state machine table: reachable transitions, role checks,
and terminal statuses.
"""

import pytest

from leadpay_kernel.domain.actors import Actor, Role, assign_parties
from leadpay_kernel.domain.negotiation import (
    TRANSITIONS,
    ConnectionStatus,
    NegotiationAction,
    RequestStatus,
    allowed_actions,
    initial_request_status,
    resolve_transition,
)
from leadpay_kernel.exceptions import InvalidTransitionError, RoleNotPermittedError


def resolve(status, action, role):
    return resolve_transition("ConnectionRequest", "req-1", status, action, role)


class TestInitialStatus:
    def test_provider_request_awaits_buyer(self):
        assert initial_request_status(Role.PROVIDER) == RequestStatus.PENDING_BUYER_REVIEW

    def test_buyer_invitation_awaits_provider(self):
        assert initial_request_status(Role.BUYER) == RequestStatus.PENDING_PROVIDER_ACCEPT


class TestTransitions:
    @pytest.mark.parametrize(
        "status, action, role, target",
        [
            (RequestStatus.PENDING_BUYER_REVIEW, NegotiationAction.SET_TERMS, Role.BUYER,
             RequestStatus.PENDING_PROVIDER_ACCEPT),
            (RequestStatus.PENDING_BUYER_REVIEW, NegotiationAction.REJECT, Role.BUYER,
             RequestStatus.REJECTED_BY_BUYER),
            (RequestStatus.PENDING_PROVIDER_ACCEPT, NegotiationAction.ACCEPT, Role.PROVIDER,
             RequestStatus.ACCEPTED),
            (RequestStatus.PENDING_PROVIDER_ACCEPT, NegotiationAction.DECLINE, Role.PROVIDER,
             RequestStatus.DECLINED_BY_PROVIDER),
            (ConnectionStatus.ACTIVE, NegotiationAction.TERMINATE, Role.PROVIDER,
             ConnectionStatus.TERMINATED),
            (ConnectionStatus.ACTIVE, NegotiationAction.TERMINATE, Role.BUYER,
             ConnectionStatus.TERMINATED),
            (ConnectionStatus.ACTIVE, NegotiationAction.UPDATE_TERMS, Role.BUYER,
             ConnectionStatus.ACTIVE),
        ],
    )
    def test_listed_transitions(self, status, action, role, target):
        assert resolve(status, action, role).target == target

    def test_status_may_be_given_as_string(self):
        assert resolve("pending_buyer_review", NegotiationAction.REJECT, Role.BUYER)

    def test_provider_cannot_set_terms(self):
        with pytest.raises(RoleNotPermittedError) as exc_info:
            resolve(RequestStatus.PENDING_BUYER_REVIEW, NegotiationAction.SET_TERMS, Role.PROVIDER)
        assert exc_info.value.code == "ROLE_NOT_PERMITTED"
        assert exc_info.value.role == "provider"

    def test_buyer_cannot_accept_own_terms(self):
        with pytest.raises(RoleNotPermittedError):
            resolve(RequestStatus.PENDING_PROVIDER_ACCEPT, NegotiationAction.ACCEPT, Role.BUYER)

    def test_provider_cannot_update_terms(self):
        with pytest.raises(RoleNotPermittedError):
            resolve(ConnectionStatus.ACTIVE, NegotiationAction.UPDATE_TERMS, Role.PROVIDER)

    def test_accept_before_terms_is_invalid(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            resolve(RequestStatus.PENDING_BUYER_REVIEW, NegotiationAction.ACCEPT, Role.PROVIDER)
        assert exc_info.value.status == "pending_buyer_review"
        assert exc_info.value.action == "accept"

    @pytest.mark.parametrize(
        "status",
        [
            RequestStatus.ACCEPTED,
            RequestStatus.DECLINED_BY_PROVIDER,
            RequestStatus.REJECTED_BY_BUYER,
            ConnectionStatus.TERMINATED,
        ],
    )
    @pytest.mark.parametrize("action", list(NegotiationAction))
    @pytest.mark.parametrize("role", list(Role))
    def test_terminal_statuses_have_no_exits(self, status, action, role):
        with pytest.raises(InvalidTransitionError):
            resolve(status, action, role)

    def test_terminal_flags(self):
        terminal = {s for s in RequestStatus if s.is_terminal}
        assert terminal == {
            RequestStatus.ACCEPTED,
            RequestStatus.DECLINED_BY_PROVIDER,
            RequestStatus.REJECTED_BY_BUYER,
        }
        assert ConnectionStatus.TERMINATED.is_terminal
        assert not ConnectionStatus.ACTIVE.is_terminal

    def test_no_transition_leaves_a_terminal_status(self):
        assert not any(t.source.is_terminal for t in TRANSITIONS)

    def test_allowed_actions(self):
        assert allowed_actions(ConnectionStatus.ACTIVE, Role.PROVIDER) == {NegotiationAction.TERMINATE}
        assert allowed_actions(ConnectionStatus.ACTIVE, Role.BUYER) == {
            NegotiationAction.TERMINATE,
            NegotiationAction.UPDATE_TERMS,
        }


class TestActors:
    def test_assign_parties(self, provider, buyer):
        assert assign_parties(provider, buyer.account_id) == (provider.account_id, buyer.account_id)
        assert assign_parties(buyer, provider.account_id) == (provider.account_id, buyer.account_id)

    def test_counterpart(self):
        assert Role.PROVIDER.counterpart == Role.BUYER
        assert Role.BUYER.counterpart == Role.PROVIDER

    def test_constructors(self, provider):
        assert Actor.provider(provider.account_id) == provider
        assert provider.is_provider and not provider.is_buyer
