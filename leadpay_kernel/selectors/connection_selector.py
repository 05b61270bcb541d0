"""
ConnectionSelector -- read-only queries over requests and connections.

Backs the two dashboards: a buyer's inbox of provider requests awaiting
terms, a provider's list of terms awaiting acceptance, and each party's
active connections.
"""

from uuid import UUID

from sqlalchemy import or_, select

from leadpay_kernel.domain.dtos import ConnectionInfo, ConnectionRequestInfo
from leadpay_kernel.domain.negotiation import ConnectionStatus, RequestStatus
from leadpay_kernel.models.connection import Connection, ConnectionRequest
from leadpay_kernel.selectors.base import BaseSelector


class ConnectionSelector(BaseSelector):
    def get_request(self, request_id: UUID) -> ConnectionRequestInfo | None:
        model = self.session.get(ConnectionRequest, request_id)
        return ConnectionRequestInfo.from_model(model) if model is not None else None

    def get_connection(self, connection_id: UUID) -> ConnectionInfo | None:
        model = self.session.get(Connection, connection_id)
        return ConnectionInfo.from_model(model) if model is not None else None

    def pending_requests_for_buyer(self, buyer_id: UUID) -> list[ConnectionRequestInfo]:
        """Provider requests waiting for this buyer to set terms or reject."""
        return self._requests(
            ConnectionRequest.buyer_id == buyer_id,
            ConnectionRequest.status == RequestStatus.PENDING_BUYER_REVIEW.value,
        )

    def pending_terms_for_provider(self, provider_id: UUID) -> list[ConnectionRequestInfo]:
        """Terms waiting for this provider to accept or decline."""
        return self._requests(
            ConnectionRequest.provider_id == provider_id,
            ConnectionRequest.status == RequestStatus.PENDING_PROVIDER_ACCEPT.value,
        )

    def requests_for_account(self, account_id: UUID) -> list[ConnectionRequestInfo]:
        return self._requests(
            or_(
                ConnectionRequest.provider_id == account_id,
                ConnectionRequest.buyer_id == account_id,
            )
        )

    def active_connections_for_account(self, account_id: UUID) -> list[ConnectionInfo]:
        return self.connections_for_account(account_id, include_terminated=False)

    def connections_for_account(
        self,
        account_id: UUID,
        include_terminated: bool = True,
    ) -> list[ConnectionInfo]:
        stmt = select(Connection).where(
            or_(Connection.provider_id == account_id, Connection.buyer_id == account_id)
        )
        if not include_terminated:
            stmt = stmt.where(Connection.status == ConnectionStatus.ACTIVE.value)
        stmt = stmt.order_by(Connection.accepted_at.desc(), Connection.id)
        return [ConnectionInfo.from_model(m) for m in self.session.execute(stmt).scalars()]

    def _requests(self, *criteria) -> list[ConnectionRequestInfo]:
        stmt = (
            select(ConnectionRequest)
            .where(*criteria)
            .order_by(ConnectionRequest.created_at.desc(), ConnectionRequest.id)
        )
        return [
            ConnectionRequestInfo.from_model(m) for m in self.session.execute(stmt).scalars()
        ]
