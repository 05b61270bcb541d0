"""
Configuration Schema (``leadpay_config.schema``).

Frozen dataclasses describing the platform configuration.  Every object
produced by ``leadpay_config.loader`` is one of these types; nothing else
in the system reads raw YAML.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from leadpay_kernel.domain.terms_validator import TermsLimits

__all__ = [
    "CapPolicy",
    "DatabaseConfig",
    "DefaultTerms",
    "LedgerPolicy",
    "PersistencePolicy",
    "PlatformConfig",
    "TermsLimits",
]


@dataclass(frozen=True)
class DefaultTerms:
    """Starting point offered to buyers when drafting terms."""

    rate_per_lead: Decimal = Decimal("50")
    payment_timing: str = "per_lead"
    lead_types: tuple[str, ...] = ("auto",)
    termination_notice_days: int = 7
    agreement_version: str = "1.0.0"


@dataclass(frozen=True)
class CapPolicy:
    """Lead cap window settings.

    ``timezone`` is the fixed reference zone used to compute the
    Monday-anchored week and the calendar month.
    """

    timezone: str = "UTC"


@dataclass(frozen=True)
class LedgerPolicy:
    currency: str = "USD"


@dataclass(frozen=True)
class PersistencePolicy:
    """Bounded retry of units of work that failed in the storage layer."""

    max_retries: int = 3
    retry_backoff_seconds: float = 0.05
    cas_max_attempts: int = 5


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///leadpay.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10


@dataclass(frozen=True)
class PlatformConfig:
    """Complete, validated platform configuration."""

    config_id: str
    version: int
    terms_limits: TermsLimits = field(default_factory=TermsLimits)
    default_terms: DefaultTerms = field(default_factory=DefaultTerms)
    cap_policy: CapPolicy = field(default_factory=CapPolicy)
    ledger_policy: LedgerPolicy = field(default_factory=LedgerPolicy)
    persistence: PersistencePolicy = field(default_factory=PersistencePolicy)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    checksum: str = ""
