"""
LeadPayPlatform -- unit-of-work facade over the kernel.

Responsibility:
    Exposes every marketplace operation as one database transaction:
    opens a session, wires the kernel services from configuration, runs
    the operation, commits, and then dispatches notifications.  Storage
    failures are rolled back and retried a bounded number of times.

Architecture position:
    Services -- outer shell.  The only place that commits.

Invariants enforced:
    - One operation, one transaction: a failure at any step leaves the
      pre-state, success leaves the full post-state.
    - Domain errors (LeadPayError) are never retried.
    - Only transient storage failures (OperationalError) are retried.
    - Notifications are dispatched only after commit.

Failure modes:
    - PersistenceError: the storage layer kept failing after
      ``persistence.max_retries`` retries.
    - ConstraintViolationError: the store rejected a write with an
      integrity constraint; never retried.
    - Every kernel exception propagates unchanged.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from leadpay_config import PlatformConfig, get_active_config
from leadpay_kernel.domain.actors import Actor, Role
from leadpay_kernel.domain.balances import AccountBalance
from leadpay_kernel.domain.clock import Clock, SystemClock
from leadpay_kernel.domain.dtos import (
    ConnectionInfo,
    ConnectionRequestInfo,
    LeadSubmissionResult,
    TransactionDraft,
    TransactionInfo,
)
from leadpay_kernel.domain.lead_caps import CapStatus, CapTracker
from leadpay_kernel.domain.terms import ContractTerms
from leadpay_kernel.domain.terms_validator import TermsValidator
from leadpay_kernel.exceptions import (
    CapExceededError,
    ConstraintViolationError,
    LeadPayError,
    PaymentProcessorError,
    PersistenceError,
)
from leadpay_kernel.logging_config import LogContext, get_logger
from leadpay_kernel.selectors.connection_selector import ConnectionSelector
from leadpay_kernel.selectors.transaction_selector import LedgerReport, TransactionSelector
from leadpay_kernel.services.connection_registry import ConnectionRegistry
from leadpay_kernel.services.ledger_service import LedgerService, ReversalResult
from leadpay_services.notifications import (
    Notification,
    NotificationDispatcher,
    NotificationKind,
)
from leadpay_services.payouts import PaymentProcessor, PayoutSettlementService

logger = get_logger("services.platform")

T = TypeVar("T")


class LeadPayPlatform:
    """
    Transactional entrypoint for callers outside the kernel.

    Contract:
        Thread-safe as long as ``session_factory`` is: every call opens
        and closes its own session.

    Non-goals:
        - Does NOT authenticate actors.
        - Does NOT expose ORM instances.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: PlatformConfig | None = None,
        clock: Clock | None = None,
        dispatcher: NotificationDispatcher | None = None,
        processor: PaymentProcessor | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._dispatcher = dispatcher or NotificationDispatcher()
        self._processor = processor
        self._sleep = sleep

        self._validator = TermsValidator(self._config.terms_limits)
        self._cap_tracker = CapTracker(self._config.cap_policy.timezone)
        defaults = self._config.default_terms
        self._default_terms = ContractTerms(
            rate_per_lead=defaults.rate_per_lead,
            payment_timing=defaults.payment_timing,
            lead_types=frozenset(defaults.lead_types),
            termination_notice_days=defaults.termination_notice_days,
            agreement_version=defaults.agreement_version,
        )

    @property
    def config(self) -> PlatformConfig:
        return self._config

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    def request_connection(
        self,
        actor: Actor,
        counterparty_id: UUID,
        message: str | None = None,
        terms: ContractTerms | dict[str, Any] | None = None,
        counterparty_role: Role | None = None,
    ) -> ConnectionRequestInfo:
        request = self._run(
            "request_connection",
            lambda s: self._registry(s).request_connection(
                actor, counterparty_id, message, terms, counterparty_role
            ),
            actor,
        )
        self._notify(
            NotificationKind.REQUEST_RECEIVED,
            _counterparty(actor, request.provider_id, request.buyer_id),
            request.id,
            message=message,
        )
        return request

    def set_terms(
        self,
        actor: Actor,
        request_id: UUID,
        terms: ContractTerms | dict[str, Any],
    ) -> ConnectionRequestInfo:
        request = self._run(
            "set_terms", lambda s: self._registry(s).set_terms(actor, request_id, terms), actor
        )
        self._notify(
            NotificationKind.TERMS_PROPOSED,
            request.provider_id,
            request.id,
            rate_per_lead=str(request.proposed_terms.rate_per_lead),
        )
        return request

    def accept_terms(self, actor: Actor, request_id: UUID) -> ConnectionInfo:
        connection = self._run(
            "accept_terms", lambda s: self._registry(s).accept_terms(actor, request_id), actor
        )
        self._notify(NotificationKind.TERMS_ACCEPTED, connection.buyer_id, connection.id)
        return connection

    def decline_terms(self, actor: Actor, request_id: UUID) -> ConnectionRequestInfo:
        request = self._run(
            "decline_terms", lambda s: self._registry(s).decline_terms(actor, request_id), actor
        )
        self._notify(NotificationKind.TERMS_DECLINED, request.buyer_id, request.id)
        return request

    def reject_request(self, actor: Actor, request_id: UUID) -> ConnectionRequestInfo:
        request = self._run(
            "reject_request", lambda s: self._registry(s).reject_request(actor, request_id), actor
        )
        self._notify(NotificationKind.REQUEST_REJECTED, request.provider_id, request.id)
        return request

    def update_terms(
        self,
        actor: Actor,
        connection_id: UUID,
        terms: ContractTerms | dict[str, Any],
    ) -> ConnectionInfo:
        connection = self._run(
            "update_terms",
            lambda s: self._registry(s).update_terms(actor, connection_id, terms),
            actor,
        )
        self._notify(
            NotificationKind.TERMS_UPDATED,
            connection.provider_id,
            connection.id,
            rate_per_lead=str(connection.terms.rate_per_lead),
        )
        return connection

    def terminate_connection(
        self,
        actor: Actor,
        connection_id: UUID,
        reason: str | None = None,
    ) -> ConnectionInfo:
        connection = self._run(
            "terminate_connection",
            lambda s: self._registry(s).terminate_connection(actor, connection_id, reason),
            actor,
        )
        self._notify(
            NotificationKind.CONNECTION_TERMINATED,
            _counterparty(actor, connection.provider_id, connection.buyer_id),
            connection.id,
            reason=reason,
        )
        return connection

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    def check_and_record_lead_submission(
        self,
        actor: Actor,
        connection_id: UUID,
        lead_id: str | None = None,
    ) -> LeadSubmissionResult:
        try:
            return self._run(
                "check_and_record_lead_submission",
                lambda s: self._registry(s).check_and_record_lead_submission(
                    actor, connection_id, lead_id
                ),
                actor,
            )
        except CapExceededError as exc:
            self._notify(
                NotificationKind.CAP_REACHED,
                actor.account_id,
                connection_id,
                reset_hint=exc.reset_hint,
            )
            raise

    def get_cap_status(self, connection_id: UUID) -> CapStatus:
        return self._run(
            "get_cap_status", lambda s: self._registry(s).get_cap_status(connection_id)
        )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def record_transaction(self, draft: TransactionDraft) -> TransactionInfo:
        return self._run("record_transaction", lambda s: self._ledger(s).record(draft))

    def complete_transaction(
        self,
        transaction_id: UUID,
        processor_payment_id: str | None = None,
    ) -> TransactionInfo:
        return self._run(
            "complete_transaction",
            lambda s: self._ledger(s).complete(transaction_id, processor_payment_id),
        )

    def fail_transaction(self, transaction_id: UUID, reason: str) -> TransactionInfo:
        return self._run(
            "fail_transaction", lambda s: self._ledger(s).fail(transaction_id, reason)
        )

    def reverse_transaction(self, transaction_id: UUID, reason: str) -> ReversalResult:
        return self._run(
            "reverse_transaction", lambda s: self._ledger(s).reverse(transaction_id, reason)
        )

    def settle_payout(self, transaction_id: UUID) -> TransactionInfo:
        """
        Pay out a pending entry through the configured processor.

        A processor rejection is committed as a failed entry before the
        PaymentProcessorError is re-raised.
        """
        if self._processor is None:
            raise RuntimeError("No payment processor configured")

        def settle(session: Session) -> TransactionInfo | PaymentProcessorError:
            settlement = PayoutSettlementService(self._ledger(session), self._processor)
            try:
                return settlement.settle(transaction_id)
            except PaymentProcessorError as exc:
                return exc

        outcome = self._run("settle_payout", settle)
        if isinstance(outcome, PaymentProcessorError):
            raise outcome
        return outcome

    def get_balance(self, account_id: UUID) -> AccountBalance:
        return self._run("get_balance", lambda s: self._ledger(s).get_balance(account_id))

    def reconcile_balance(self, account_id: UUID) -> AccountBalance:
        return self._run(
            "reconcile_balance", lambda s: self._ledger(s).reconcile_balance(account_id)
        )

    def ledger_report(self, start: datetime, end: datetime) -> LedgerReport:
        return self._run("ledger_report", lambda s: TransactionSelector(s).report(start, end))

    # ------------------------------------------------------------------
    # Dashboards
    # ------------------------------------------------------------------

    def pending_requests_for_buyer(self, buyer_id: UUID) -> list[ConnectionRequestInfo]:
        return self._run(
            "pending_requests_for_buyer",
            lambda s: ConnectionSelector(s).pending_requests_for_buyer(buyer_id),
        )

    def pending_terms_for_provider(self, provider_id: UUID) -> list[ConnectionRequestInfo]:
        return self._run(
            "pending_terms_for_provider",
            lambda s: ConnectionSelector(s).pending_terms_for_provider(provider_id),
        )

    def active_connections_for_account(self, account_id: UUID) -> list[ConnectionInfo]:
        return self._run(
            "active_connections_for_account",
            lambda s: ConnectionSelector(s).active_connections_for_account(account_id),
        )

    def transactions_for_account(self, account_id: UUID, limit: int = 50) -> list[TransactionInfo]:
        return self._run(
            "transactions_for_account",
            lambda s: TransactionSelector(s).list_by_account(account_id, limit),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ledger(self, session: Session) -> LedgerService:
        return LedgerService(session, self._clock, currency=self._config.ledger_policy.currency)

    def _registry(self, session: Session) -> ConnectionRegistry:
        return ConnectionRegistry(
            session,
            clock=self._clock,
            validator=self._validator,
            cap_tracker=self._cap_tracker,
            ledger=self._ledger(session),
            default_terms=self._default_terms,
            cas_max_attempts=self._config.persistence.cas_max_attempts,
        )

    def _run(self, operation: str, work: Callable[[Session], T], actor: Actor | None = None) -> T:
        policy = self._config.persistence
        attempt = 0
        with LogContext.bind(actor_id=actor.account_id if actor else None):
            while True:
                attempt += 1
                session = self._session_factory()
                try:
                    result = work(session)
                    session.commit()
                    return result
                except LeadPayError:
                    session.rollback()
                    raise
                except IntegrityError as exc:
                    session.rollback()
                    reason = str(exc.orig) if exc.orig is not None else str(exc)
                    logger.error(
                        "unit_of_work_constraint_violation",
                        extra={"operation": operation, "reason": reason},
                    )
                    raise ConstraintViolationError(operation, reason) from exc
                except OperationalError as exc:
                    session.rollback()
                    reason = str(exc.orig) if exc.orig is not None else str(exc)
                    if attempt > policy.max_retries:
                        logger.error(
                            "unit_of_work_failed",
                            extra={"operation": operation, "attempts": attempt, "reason": reason},
                        )
                        raise PersistenceError(operation, attempt, reason) from exc
                    logger.warning(
                        "unit_of_work_retry",
                        extra={"operation": operation, "attempt": attempt, "reason": reason},
                    )
                    self._sleep(policy.retry_backoff_seconds * attempt)
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()

    def _notify(self, kind: NotificationKind, recipient_id: UUID, subject_id: UUID, **details: Any) -> None:
        self._dispatcher.dispatch(
            Notification(kind=kind, recipient_id=recipient_id, subject_id=subject_id, details=details)
        )


def _counterparty(actor: Actor, provider_id: UUID, buyer_id: UUID) -> UUID:
    match actor.role:
        case Role.PROVIDER:
            return buyer_id
        case Role.BUYER:
            return provider_id
