"""
ConnectionRepository -- persistence port behind ConnectionRegistry.

Responsibility:
    Loads and stores connection requests and connections.  Every state
    change goes through a conditional UPDATE whose WHERE clause carries the
    precondition (current status, or current version for counter writes),
    so a lost race shows up as ``False`` instead of a silent overwrite.

Architecture position:
    Kernel > DB.  Imports models only.  ConnectionRegistry depends on the
    abstract ``ConnectionRepository``; ``SqlAlchemyConnectionRepository``
    is the implementation used in production and tests.

Invariants enforced:
    - No read-modify-write of status or counters: each write is one
      statement guarded by its precondition.
    - After a successful conditional update the in-session object is
      reloaded, so callers never see a stale identity-map copy.

Failure modes:
    - IntegrityError from ``add_request`` / ``add_connection`` when a
      uniqueness guard (open pair, active pair, one connection per
      request) is violated.  The savepoint is rolled back; the outer
      transaction stays usable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadpay_kernel.logging_config import get_logger
from leadpay_kernel.models.connection import Connection, ConnectionRequest, pair_key

logger = get_logger("db.repository")


class ConnectionRepository(ABC):
    """Storage port for the negotiation state machine."""

    @abstractmethod
    def add_request(self, request: ConnectionRequest) -> None:
        """Insert a new request.  Raises IntegrityError on a duplicate open pair."""

    @abstractmethod
    def get_request(self, request_id: UUID, for_update: bool = False) -> ConnectionRequest | None:
        ...

    @abstractmethod
    def find_open_request(self, provider_id: UUID, buyer_id: UUID) -> ConnectionRequest | None:
        ...

    @abstractmethod
    def transition_request(
        self,
        request_id: UUID,
        expected_status: str,
        values: dict[str, Any],
    ) -> ConnectionRequest | None:
        """Apply ``values`` iff the request is still in ``expected_status``.

        Returns the reloaded request, or None when the precondition failed.
        """

    @abstractmethod
    def add_connection(self, connection: Connection) -> None:
        """Insert a new connection.  Raises IntegrityError on a duplicate."""

    @abstractmethod
    def get_connection(self, connection_id: UUID, for_update: bool = False) -> Connection | None:
        ...

    @abstractmethod
    def find_active_connection(self, provider_id: UUID, buyer_id: UUID) -> Connection | None:
        ...

    @abstractmethod
    def compare_and_set_connection(
        self,
        connection_id: UUID,
        expected_version: int,
        expected_status: str,
        values: dict[str, Any],
    ) -> Connection | None:
        """Apply ``values`` and bump ``version`` iff version and status match.

        Returns the reloaded connection, or None when the precondition failed.
        """

    @abstractmethod
    def reload_connection(self, connection_id: UUID) -> Connection | None:
        """Re-read a connection from the database, discarding cached state."""


class SqlAlchemyConnectionRepository(ConnectionRepository):
    """
    ConnectionRepository over a caller-owned SQLAlchemy session.

    Contract:
        Flushes, never commits.  ``for_update`` loads issue
        ``SELECT ... FOR UPDATE`` (a no-op on SQLite, where the engine
        already holds the write lock from ``BEGIN IMMEDIATE``).
    """

    def __init__(self, session: Session):
        self._session = session

    def add_request(self, request: ConnectionRequest) -> None:
        savepoint = self._session.begin_nested()
        try:
            self._session.add(request)
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            raise
        savepoint.commit()

    def get_request(self, request_id: UUID, for_update: bool = False) -> ConnectionRequest | None:
        stmt = select(ConnectionRequest).where(ConnectionRequest.id == request_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def find_open_request(self, provider_id: UUID, buyer_id: UUID) -> ConnectionRequest | None:
        return self._session.execute(
            select(ConnectionRequest)
            .where(ConnectionRequest.open_pair_key == pair_key(provider_id, buyer_id))
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def transition_request(
        self,
        request_id: UUID,
        expected_status: str,
        values: dict[str, Any],
    ) -> ConnectionRequest | None:
        result = self._session.execute(
            update(ConnectionRequest)
            .where(
                ConnectionRequest.id == request_id,
                ConnectionRequest.status == expected_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug(
                "request_precondition_failed",
                extra={"request_id": str(request_id), "expected_status": expected_status},
            )
            return None
        return self._session.get(ConnectionRequest, request_id, populate_existing=True)

    def add_connection(self, connection: Connection) -> None:
        savepoint = self._session.begin_nested()
        try:
            self._session.add(connection)
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            raise
        savepoint.commit()

    def get_connection(self, connection_id: UUID, for_update: bool = False) -> Connection | None:
        stmt = select(Connection).where(Connection.id == connection_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def find_active_connection(self, provider_id: UUID, buyer_id: UUID) -> Connection | None:
        return self._session.execute(
            select(Connection).where(
                Connection.active_pair_key == pair_key(provider_id, buyer_id)
            )
        ).scalar_one_or_none()

    def compare_and_set_connection(
        self,
        connection_id: UUID,
        expected_version: int,
        expected_status: str,
        values: dict[str, Any],
    ) -> Connection | None:
        result = self._session.execute(
            update(Connection)
            .where(
                Connection.id == connection_id,
                Connection.version == expected_version,
                Connection.status == expected_status,
            )
            .values(version=Connection.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug(
                "connection_cas_failed",
                extra={
                    "connection_id": str(connection_id),
                    "expected_version": expected_version,
                },
            )
            return None
        return self.reload_connection(connection_id)

    def reload_connection(self, connection_id: UUID) -> Connection | None:
        return self._session.get(Connection, connection_id, populate_existing=True)
