"""Database layer - engine, base classes, repository and immutability guards."""

from leadpay_kernel.db.base import UUID, Base, UTCDateTime, UUIDString
from leadpay_kernel.db.engine import (
    build_engine,
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
)

__all__ = [
    "Base",
    "UTCDateTime",
    "UUID",
    "UUIDString",
    "build_engine",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
]
