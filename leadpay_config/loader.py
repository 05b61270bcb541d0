"""
Configuration Loader (``leadpay_config.loader``).

Responsibility
--------------
Loads the platform YAML file and parses it into the frozen dataclasses of
``leadpay_config.schema``.  Runtime code obtains configuration through
``leadpay_config.get_active_config()`` only.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Out-of-range values  -> ``ValueError`` with a descriptive message.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from leadpay_config.schema import (
    CapPolicy,
    DatabaseConfig,
    DefaultTerms,
    LedgerPolicy,
    PersistencePolicy,
    PlatformConfig,
    TermsLimits,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    return data or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 over the parsed configuration."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, float):
        # YAML floats go through str() to avoid binary artifacts
        value = str(value)
    try:
        return Decimal(str(value))
    except ArithmeticError as exc:
        raise ValueError(f"{name} must be a decimal number, got {value!r}") from exc


def parse_terms_limits(data: dict[str, Any]) -> TermsLimits:
    limits = TermsLimits(
        min_rate_per_lead=_decimal(data.get("min_rate_per_lead", "5"), "min_rate_per_lead"),
        max_rate_per_lead=_decimal(data.get("max_rate_per_lead", "500"), "max_rate_per_lead"),
        max_weekly_cap=int(data.get("max_weekly_cap", 1000)),
        max_monthly_cap=int(data.get("max_monthly_cap", 10000)),
        max_message_length=int(data.get("max_message_length", 500)),
        rate_decimal_places=int(data.get("rate_decimal_places", 2)),
    )
    if limits.min_rate_per_lead <= 0:
        raise ValueError("min_rate_per_lead must be positive")
    if limits.min_rate_per_lead > limits.max_rate_per_lead:
        raise ValueError(
            f"min_rate_per_lead ({limits.min_rate_per_lead}) exceeds "
            f"max_rate_per_lead ({limits.max_rate_per_lead})"
        )
    if limits.max_weekly_cap < 1 or limits.max_monthly_cap < 1:
        raise ValueError("cap maxima must be positive")
    return limits


def parse_default_terms(data: dict[str, Any]) -> DefaultTerms:
    return DefaultTerms(
        rate_per_lead=_decimal(data.get("rate_per_lead", "50"), "rate_per_lead"),
        payment_timing=data.get("payment_timing", "per_lead"),
        lead_types=tuple(data.get("lead_types", ["auto"])),
        termination_notice_days=int(data.get("termination_notice_days", 7)),
        agreement_version=str(data.get("agreement_version", "1.0.0")),
    )


def parse_persistence(data: dict[str, Any]) -> PersistencePolicy:
    policy = PersistencePolicy(
        max_retries=int(data.get("max_retries", 3)),
        retry_backoff_seconds=float(data.get("retry_backoff_seconds", 0.05)),
        cas_max_attempts=int(data.get("cas_max_attempts", 5)),
    )
    if policy.max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    if policy.cas_max_attempts < 1:
        raise ValueError("cas_max_attempts must be >= 1")
    return policy


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    return DatabaseConfig(
        url=data.get("url", "sqlite:///leadpay.db"),
        echo=bool(data.get("echo", False)),
        pool_size=int(data.get("pool_size", 20)),
        max_overflow=int(data.get("max_overflow", 10)),
    )


def parse_platform_config(data: dict[str, Any]) -> PlatformConfig:
    """
    Parse a raw configuration dict into a ``PlatformConfig``.

    ``config_id`` and ``version`` are required; every section is optional
    and falls back to the schema defaults.
    """
    return PlatformConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        terms_limits=parse_terms_limits(data.get("terms_limits", {})),
        default_terms=parse_default_terms(data.get("default_terms", {})),
        cap_policy=CapPolicy(
            timezone=data.get("cap_policy", {}).get("timezone", "UTC"),
        ),
        ledger_policy=LedgerPolicy(
            currency=data.get("ledger_policy", {}).get("currency", "USD"),
        ),
        persistence=parse_persistence(data.get("persistence", {})),
        database=parse_database(data.get("database", {})),
        checksum=compute_checksum(data),
    )


def load_platform_config(path: Path) -> PlatformConfig:
    """Load and parse a platform configuration file."""
    return parse_platform_config(load_yaml_file(path))
