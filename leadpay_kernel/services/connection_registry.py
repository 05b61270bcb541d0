"""
ConnectionRegistry -- negotiation state machine and lead submission gate.

Responsibility:
    Owns ConnectionRequest and Connection.  Moves requests through
    buyer review and provider acceptance, creates the Connection on
    accept, replaces terms, terminates, and authorizes lead submissions
    against the connection's weekly/monthly caps.  An authorized lead
    moves the counters and records a ``lead_payout`` in the same
    database transaction.

Architecture position:
    Kernel > Services -- imperative shell.
    Calls: TermsValidator (pure), CapTracker (pure), LedgerService,
    ConnectionRepository.

Invariants enforced:
    - Only transitions in ``domain.negotiation.TRANSITIONS`` happen, and
      only for the role that table names.  Non-parties are refused
      before anything about the entity is revealed.
    - At most one open request and one active connection per pair.
      ``request_connection`` for a pair with an open request returns that
      request, including under concurrent duplicates.
    - Accept updates the request and inserts the Connection in one
      transaction; the connection's ``request_id`` is unique.
    - Counter writes are compare-and-set on ``connections.version`` under
      a row lock, so N concurrent submissions against cap K succeed
      exactly min(N, K) times.
    - A failed precondition leaves stored state unchanged.

Failure modes:
    - ValidationError: invalid terms, self-request, same-role request,
      over-long message or reason.
    - InvalidTransitionError / RoleNotPermittedError / NotAPartyError /
      StateConflictError: operation not valid for the current state,
      role or actor.
    - CapExceededError: a lead submission hit a cap.
    - ConnectionRequestNotFoundError / ConnectionNotFoundError.
    - OptimisticLockError: compare-and-set lost every attempt.

Audit relevance:
    Every transition logs ``connection_request_*`` / ``connection_*``
    events with the actor, entity id and resulting status.  Denied lead
    submissions log ``lead_submission_denied`` with the cap figures.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadpay_kernel.db.repository import ConnectionRepository, SqlAlchemyConnectionRepository
from leadpay_kernel.domain.actors import Actor, Role, assign_parties
from leadpay_kernel.domain.clock import Clock
from leadpay_kernel.domain.dtos import (
    ConnectionInfo,
    ConnectionRequestInfo,
    ConnectionStats,
    LeadSubmissionResult,
)
from leadpay_kernel.domain.lead_caps import CapStatus, CapTracker
from leadpay_kernel.domain.money import ZERO, to_money
from leadpay_kernel.domain.negotiation import (
    ConnectionStatus,
    NegotiationAction,
    initial_request_status,
    resolve_transition,
)
from leadpay_kernel.domain.terms import ContractTerms, coerce_terms
from leadpay_kernel.domain.terms_validator import TermsValidator
from leadpay_kernel.exceptions import (
    CapExceededError,
    ConnectionNotFoundError,
    ConnectionRequestNotFoundError,
    InvalidTransitionError,
    NotAPartyError,
    OptimisticLockError,
    RoleNotPermittedError,
    StateConflictError,
    ValidationError,
)
from leadpay_kernel.logging_config import LogContext, get_logger
from leadpay_kernel.models.connection import Connection, ConnectionRequest, pair_key
from leadpay_kernel.selectors.transaction_selector import TransactionSelector
from leadpay_kernel.services.base import BaseService
from leadpay_kernel.services.ledger_service import LedgerService

logger = get_logger("services.connection_registry")

SUBMIT_LEAD = "submit_lead"
_MAX_REASON_LENGTH = 500


class ConnectionRegistry(BaseService):
    """
    Provider/buyer negotiation and the lead submission gate.

    Contract:
        Every public method performs one logical operation inside the
        caller's transaction and returns frozen DTOs.  The caller commits
        on success and rolls back on any exception.

    Non-goals:
        - Does NOT authenticate; the ``Actor`` is trusted as given.
        - Does NOT send notifications (LeadPayPlatform does, after commit).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        validator: TermsValidator | None = None,
        cap_tracker: CapTracker | None = None,
        ledger: LedgerService | None = None,
        repository: ConnectionRepository | None = None,
        default_terms: ContractTerms | None = None,
        cas_max_attempts: int = 5,
    ):
        super().__init__(session, clock)
        self._validator = validator or TermsValidator()
        self._caps = cap_tracker or CapTracker()
        self._ledger = ledger or LedgerService(session, self._clock)
        self._repo = repository or SqlAlchemyConnectionRepository(session)
        self._transactions = TransactionSelector(session)
        self._default_terms = default_terms
        self._cas_max_attempts = cas_max_attempts

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def request_connection(
        self,
        actor: Actor,
        counterparty_id: UUID,
        message: str | None = None,
        terms: ContractTerms | dict[str, Any] | None = None,
        counterparty_role: Role | None = None,
    ) -> ConnectionRequestInfo:
        """
        Open a request between ``actor`` and ``counterparty_id``.

        A provider asks a buyer to review it; a buyer invites a provider
        with terms attached (falling back to the configured default terms).
        Returns the existing open request for the pair instead of opening
        a second one.

        Raises:
            ValidationError: Self-request, same-role request, message too
                long, provider-supplied terms, or invalid buyer terms.
            StateConflictError: The pair already has an active connection.
        """
        if counterparty_id == actor.account_id:
            raise ValidationError(
                field="counterpartyId",
                message="Cannot open a connection request with yourself",
                value=str(counterparty_id),
            )
        if counterparty_role is not None and counterparty_role == actor.role:
            raise ValidationError(
                field="counterpartyId",
                message=f"Connections pair a provider with a buyer, not two {actor.role.value}s",
                value=counterparty_role.value,
            )
        max_len = self._validator.limits.max_message_length
        if message is not None and len(message) > max_len:
            raise ValidationError(
                field="message",
                message=f"message may not exceed {max_len} characters",
                bound=max_len,
                value=len(message),
            )

        proposed = self._initial_terms(actor, terms)
        provider_id, buyer_id = assign_parties(actor, counterparty_id)

        with LogContext.bind(actor_id=actor.account_id):
            existing = self._repo.find_open_request(provider_id, buyer_id)
            if existing is not None:
                logger.info(
                    "connection_request_reused",
                    extra={"request_id": str(existing.id), "status": existing.status},
                )
                return ConnectionRequestInfo.from_model(existing)

            active = self._repo.find_active_connection(provider_id, buyer_id)
            if active is not None:
                raise StateConflictError(
                    entity_type="Connection",
                    entity_id=str(active.id),
                    status=active.status,
                    action="request_connection",
                    message="An active connection already exists for this provider and buyer",
                )

            status = initial_request_status(actor.role)
            now = self._clock.now()
            request = ConnectionRequest(
                id=uuid4(),
                provider_id=provider_id,
                buyer_id=buyer_id,
                initiator=actor.role.value,
                message=message,
                proposed_terms=proposed.to_dict() if proposed is not None else None,
                status=status.value,
                open_pair_key=pair_key(provider_id, buyer_id),
                created_at=now,
                reviewed_at=now if proposed is not None else None,
            )
            try:
                self._repo.add_request(request)
            except IntegrityError:
                # A concurrent caller opened the request first
                existing = self._repo.find_open_request(provider_id, buyer_id)
                if existing is None:
                    raise
                logger.info(
                    "connection_request_reused",
                    extra={"request_id": str(existing.id), "status": existing.status},
                )
                return ConnectionRequestInfo.from_model(existing)

            logger.info(
                "connection_request_created",
                extra={
                    "request_id": str(request.id),
                    "initiator": actor.role.value,
                    "status": status.value,
                    "provider_id": str(provider_id),
                    "buyer_id": str(buyer_id),
                },
            )
            return ConnectionRequestInfo.from_model(request)

    def set_terms(
        self,
        actor: Actor,
        request_id: UUID,
        terms: ContractTerms | dict[str, Any],
    ) -> ConnectionRequestInfo:
        """Buyer attaches terms to a provider's request."""
        validated = self._validator.require_valid(coerce_terms(terms))
        now = self._clock.now()
        return self._transition_request(
            actor,
            request_id,
            NegotiationAction.SET_TERMS,
            {"proposed_terms": validated.to_dict(), "reviewed_at": now},
        )

    def reject_request(self, actor: Actor, request_id: UUID) -> ConnectionRequestInfo:
        """Buyer turns down a provider's request."""
        return self._transition_request(
            actor,
            request_id,
            NegotiationAction.REJECT,
            {"reviewed_at": self._clock.now()},
        )

    def decline_terms(self, actor: Actor, request_id: UUID) -> ConnectionRequestInfo:
        """Provider turns down the buyer's terms."""
        return self._transition_request(
            actor,
            request_id,
            NegotiationAction.DECLINE,
            {"responded_at": self._clock.now()},
        )

    def accept_terms(self, actor: Actor, request_id: UUID) -> ConnectionInfo:
        """
        Provider accepts the buyer's terms, creating an active Connection.

        The request becomes ``accepted`` and the Connection is inserted
        with the accepted terms, zeroed stats and the current window keys.

        Raises:
            StateConflictError: The request is not awaiting acceptance, or
                the pair gained an active connection in the meantime.
        """
        with LogContext.bind(actor_id=actor.account_id, request_id=request_id):
            request = self._load_request(request_id)
            self._require_party(
                actor, "ConnectionRequest", request_id, request.status,
                NegotiationAction.ACCEPT.value, request.provider_id, request.buyer_id,
            )
            transition = resolve_transition(
                "ConnectionRequest", str(request_id), request.status,
                NegotiationAction.ACCEPT, actor.role,
            )
            if request.proposed_terms is None:
                raise StateConflictError(
                    entity_type="ConnectionRequest",
                    entity_id=str(request_id),
                    status=request.status,
                    action=NegotiationAction.ACCEPT.value,
                    message=f"ConnectionRequest {request_id} has no terms to accept",
                )
            terms = self._validator.require_valid(ContractTerms.from_dict(request.proposed_terms))

            now = self._clock.now()
            window = self._caps.window(now)
            connection_id = uuid4()

            accepted = self._repo.transition_request(
                request_id,
                request.status,
                {
                    "status": transition.target.value,
                    "open_pair_key": None,
                    "responded_at": now,
                    "connection_id": connection_id,
                },
            )
            if accepted is None:
                raise self._request_conflict(request_id, NegotiationAction.ACCEPT)

            connection = Connection(
                id=connection_id,
                request_id=request_id,
                provider_id=request.provider_id,
                buyer_id=request.buyer_id,
                status=ConnectionStatus.ACTIVE.value,
                active_pair_key=pair_key(request.provider_id, request.buyer_id),
                terms=terms.to_dict(),
                total_leads=0,
                total_paid=ZERO,
                leads_this_week=0,
                leads_this_month=0,
                week_start_date=window.week_start,
                month_start_date=window.month_start,
                requested_at=request.created_at,
                terms_set_at=request.reviewed_at,
                accepted_at=now,
                version=1,
            )
            try:
                self._repo.add_connection(connection)
            except IntegrityError as exc:
                raise StateConflictError(
                    entity_type="ConnectionRequest",
                    entity_id=str(request_id),
                    status=transition.target.value,
                    action=NegotiationAction.ACCEPT.value,
                    message="An active connection already exists for this provider and buyer",
                ) from exc

            logger.info(
                "connection_created",
                extra={
                    "connection_id": str(connection_id),
                    "provider_id": str(request.provider_id),
                    "buyer_id": str(request.buyer_id),
                    "rate_per_lead": str(terms.rate_per_lead),
                },
            )
            return ConnectionInfo.from_model(connection)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def update_terms(
        self,
        actor: Actor,
        connection_id: UUID,
        terms: ContractTerms | dict[str, Any],
    ) -> ConnectionInfo:
        """Buyer replaces the terms of an active connection.  Stats are kept."""
        validated = self._validator.require_valid(coerce_terms(terms))
        now = self._clock.now()
        with LogContext.bind(actor_id=actor.account_id, connection_id=connection_id):
            before, after = self._write_connection(
                actor,
                connection_id,
                NegotiationAction.UPDATE_TERMS,
                lambda _: {"terms": validated.to_dict(), "terms_updated_at": now},
            )
            logger.info(
                "connection_terms_updated",
                extra={
                    "previous_rate": str(before.terms.rate_per_lead),
                    "rate_per_lead": str(validated.rate_per_lead),
                    "version": after.version,
                },
            )
            return ConnectionInfo.from_model(after)

    def terminate_connection(
        self,
        actor: Actor,
        connection_id: UUID,
        reason: str | None = None,
    ) -> ConnectionInfo:
        """Either party ends an active connection.  Termination is final."""
        if reason is not None and len(reason) > _MAX_REASON_LENGTH:
            raise ValidationError(
                field="reason",
                message=f"reason may not exceed {_MAX_REASON_LENGTH} characters",
                bound=_MAX_REASON_LENGTH,
                value=len(reason),
            )
        now = self._clock.now()
        with LogContext.bind(actor_id=actor.account_id, connection_id=connection_id):
            _, after = self._write_connection(
                actor,
                connection_id,
                NegotiationAction.TERMINATE,
                lambda _: {
                    "status": ConnectionStatus.TERMINATED.value,
                    "active_pair_key": None,
                    "terminated_at": now,
                    "terminated_by": actor.account_id,
                    "termination_reason": reason,
                },
            )
            logger.info(
                "connection_terminated",
                extra={"terminated_by_role": actor.role.value, "termination_reason": reason},
            )
            return ConnectionInfo.from_model(after)

    # ------------------------------------------------------------------
    # Lead submission
    # ------------------------------------------------------------------

    def check_and_record_lead_submission(
        self,
        actor: Actor,
        connection_id: UUID,
        lead_id: str | None = None,
    ) -> LeadSubmissionResult:
        """
        Authorize one lead against the connection's caps and pay for it.

        On success the counters move (a reset window restarts at 1), total
        leads and total paid grow, and a pending ``lead_payout`` of the
        connection's rate is recorded from buyer to provider.  A lead_id
        already paid on this connection returns the original payout with
        ``duplicate=True`` and moves nothing.

        Raises:
            NotAPartyError: Actor is not the connection's provider or buyer.
            RoleNotPermittedError: The buyer tried to submit.
            InvalidTransitionError: The connection is terminated.
            StateConflictError: ``lead_id`` was paid under another connection.
            CapExceededError: A weekly or monthly cap is reached.
            OptimisticLockError: Counters could not be written.
        """
        with LogContext.bind(actor_id=actor.account_id, connection_id=connection_id):
            for attempt in range(1, self._cas_max_attempts + 1):
                connection = self._load_connection(connection_id)
                self._require_submitter(actor, connection)

                terms = ContractTerms.from_dict(connection.terms)
                now = self._clock.now()

                if lead_id is not None:
                    duplicate = self._duplicate_submission(connection, terms, lead_id, now)
                    if duplicate is not None:
                        return duplicate

                status = self._caps.evaluate(
                    _stats(connection).counters, terms.lead_caps, now
                )
                if not status.can_submit:
                    logger.warning(
                        "lead_submission_denied",
                        extra={
                            "lead_id": lead_id,
                            "leads_this_week": status.leads_this_week,
                            "leads_this_month": status.leads_this_month,
                            "weekly_limit": terms.weekly_limit,
                            "monthly_limit": terms.monthly_limit,
                            "reset_hint": status.reset_hint,
                        },
                    )
                    raise CapExceededError(
                        connection_id=str(connection_id),
                        weekly_remaining=status.weekly_remaining,
                        monthly_remaining=status.monthly_remaining,
                        reset_hint=status.reset_hint,
                        pause_when_cap_reached=status.pause_when_cap_reached,
                    )

                counters = self._caps.next_counters(status)
                updated = self._repo.compare_and_set_connection(
                    connection_id,
                    connection.version,
                    ConnectionStatus.ACTIVE.value,
                    {
                        "leads_this_week": counters.leads_this_week,
                        "leads_this_month": counters.leads_this_month,
                        "week_start_date": counters.week_start_date,
                        "month_start_date": counters.month_start_date,
                        "total_leads": connection.total_leads + 1,
                        "total_paid": to_money(connection.total_paid) + terms.rate_per_lead,
                        "last_lead_at": now,
                    },
                )
                if updated is None:
                    logger.info("lead_submission_cas_retry", extra={"attempt": attempt})
                    continue

                payout = self._ledger.record_lead_payout(
                    provider_id=updated.provider_id,
                    buyer_id=updated.buyer_id,
                    lead_id=lead_id,
                    amount=terms.rate_per_lead,
                    connection_id=connection_id,
                )
                after = self._caps.evaluate(_stats(updated).counters, terms.lead_caps, now)

                logger.info(
                    "lead_submission_recorded",
                    extra={
                        "lead_id": lead_id,
                        "transaction_id": str(payout.id),
                        "amount": str(payout.amount),
                        "leads_this_week": after.leads_this_week,
                        "leads_this_month": after.leads_this_month,
                        "weekly_reset": status.weekly_reset,
                        "monthly_reset": status.monthly_reset,
                    },
                )
                return LeadSubmissionResult(
                    allowed=True,
                    cap_status=after,
                    transaction=payout,
                    connection=ConnectionInfo.from_model(updated),
                )

            logger.error(
                "lead_submission_cas_exhausted",
                extra={"attempts": self._cas_max_attempts},
            )
            raise OptimisticLockError("Connection", str(connection_id), self._cas_max_attempts)

    def get_cap_status(self, connection_id: UUID) -> CapStatus:
        """Cap figures for the current window, without changing anything."""
        connection = self._repo.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(str(connection_id))
        terms = ContractTerms.from_dict(connection.terms)
        return self._caps.evaluate(
            _stats(connection).counters, terms.lead_caps, self._clock.now()
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _initial_terms(
        self,
        actor: Actor,
        terms: ContractTerms | dict[str, Any] | None,
    ) -> ContractTerms | None:
        match actor.role:
            case Role.PROVIDER:
                if terms is not None:
                    raise ValidationError(
                        field="terms",
                        message="Contract terms are set by the buyer",
                    )
                return None
            case Role.BUYER:
                if terms is None:
                    if self._default_terms is None:
                        raise ValidationError(
                            field="terms",
                            message="A buyer invitation must include contract terms",
                        )
                    terms = self._default_terms
                return self._validator.require_valid(coerce_terms(terms))

    def _transition_request(
        self,
        actor: Actor,
        request_id: UUID,
        action: NegotiationAction,
        values: dict[str, Any],
    ) -> ConnectionRequestInfo:
        with LogContext.bind(actor_id=actor.account_id, request_id=request_id):
            request = self._load_request(request_id)
            self._require_party(
                actor, "ConnectionRequest", request_id, request.status,
                action.value, request.provider_id, request.buyer_id,
            )
            transition = resolve_transition(
                "ConnectionRequest", str(request_id), request.status, action, actor.role
            )

            values = dict(values, status=transition.target.value)
            if transition.target.is_terminal:
                values["open_pair_key"] = None

            previous_status = request.status
            updated = self._repo.transition_request(request_id, previous_status, values)
            if updated is None:
                raise self._request_conflict(request_id, action)

            logger.info(
                f"connection_request_{action.value}",
                extra={
                    "from_status": previous_status,
                    "to_status": updated.status,
                },
            )
            return ConnectionRequestInfo.from_model(updated)

    def _write_connection(
        self,
        actor: Actor,
        connection_id: UUID,
        action: NegotiationAction,
        build_values: Callable[[Connection], dict[str, Any]],
    ) -> tuple[ConnectionInfo, Connection]:
        for attempt in range(1, self._cas_max_attempts + 1):
            connection = self._load_connection(connection_id)
            self._require_party(
                actor, "Connection", connection_id, connection.status,
                action.value, connection.provider_id, connection.buyer_id,
            )
            resolve_transition(
                "Connection", str(connection_id), connection.status, action, actor.role
            )
            before = ConnectionInfo.from_model(connection)
            updated = self._repo.compare_and_set_connection(
                connection_id,
                connection.version,
                connection.status,
                build_values(connection),
            )
            if updated is not None:
                return before, updated
            logger.info(
                "connection_cas_retry",
                extra={"action": action.value, "attempt": attempt},
            )
        raise OptimisticLockError("Connection", str(connection_id), self._cas_max_attempts)

    def _duplicate_submission(
        self,
        connection: Connection,
        terms: ContractTerms,
        lead_id: str,
        now: datetime,
    ) -> LeadSubmissionResult | None:
        existing = self._transactions.find_lead_payout(lead_id)
        if existing is None:
            return None
        if existing.connection_id != connection.id:
            raise StateConflictError(
                entity_type="Transaction",
                entity_id=str(existing.id),
                status=existing.status.value,
                action=SUBMIT_LEAD,
                message=f"Lead {lead_id} was already paid under another connection",
            )
        logger.info(
            "lead_submission_duplicate",
            extra={"lead_id": lead_id, "transaction_id": str(existing.id)},
        )
        return LeadSubmissionResult(
            allowed=True,
            cap_status=self._caps.evaluate(_stats(connection).counters, terms.lead_caps, now),
            transaction=existing,
            connection=ConnectionInfo.from_model(connection),
            duplicate=True,
        )

    def _load_request(self, request_id: UUID) -> ConnectionRequest:
        request = self._repo.get_request(request_id, for_update=True)
        if request is None:
            raise ConnectionRequestNotFoundError(str(request_id))
        return request

    def _load_connection(self, connection_id: UUID) -> Connection:
        connection = self._repo.get_connection(connection_id, for_update=True)
        if connection is None:
            raise ConnectionNotFoundError(str(connection_id))
        return connection

    def _request_conflict(self, request_id: UUID, action: NegotiationAction) -> InvalidTransitionError:
        current = self._repo.get_request(request_id)
        return InvalidTransitionError(
            entity_type="ConnectionRequest",
            entity_id=str(request_id),
            status=current.status if current is not None else None,
            action=action.value,
        )

    @staticmethod
    def _require_party(
        actor: Actor,
        entity_type: str,
        entity_id: UUID,
        status: str,
        action: str,
        provider_id: UUID,
        buyer_id: UUID,
    ) -> None:
        match actor.role:
            case Role.PROVIDER:
                is_party = actor.account_id == provider_id
            case Role.BUYER:
                is_party = actor.account_id == buyer_id
        if not is_party:
            raise NotAPartyError(
                entity_type=entity_type,
                entity_id=str(entity_id),
                status=status,
                action=action,
                account_id=str(actor.account_id),
            )

    def _require_submitter(self, actor: Actor, connection: Connection) -> None:
        self._require_party(
            actor, "Connection", connection.id, connection.status,
            SUBMIT_LEAD, connection.provider_id, connection.buyer_id,
        )
        if actor.role != Role.PROVIDER:
            raise RoleNotPermittedError(
                entity_type="Connection",
                entity_id=str(connection.id),
                status=connection.status,
                action=SUBMIT_LEAD,
                role=actor.role.value,
            )
        if connection.status != ConnectionStatus.ACTIVE.value:
            raise InvalidTransitionError(
                entity_type="Connection",
                entity_id=str(connection.id),
                status=connection.status,
                action=SUBMIT_LEAD,
            )


def _stats(connection: Connection) -> ConnectionStats:
    return ConnectionStats(
        total_leads=connection.total_leads,
        total_paid=to_money(connection.total_paid),
        leads_this_week=connection.leads_this_week,
        leads_this_month=connection.leads_this_month,
        week_start_date=connection.week_start_date,
        month_start_date=connection.month_start_date,
        last_lead_at=connection.last_lead_at,
    )
