"""
leadpay_config -- single public entrypoint for platform configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration
    files or environment variables directly.

Environment:
    LEADPAY_CONFIG -- path to an alternative YAML file.
    DATABASE_URL   -- overrides ``database.url`` of the loaded file.

Failure modes:
    - ``FileNotFoundError`` -- the configured YAML file does not exist.
    - ``ValueError`` / ``KeyError`` -- structural validation failures.

Audit relevance:
    Every load emits a ``leadpay_config_loaded`` log entry with the
    config_id, version and checksum so each run is traceable to the exact
    configuration that governed it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import replace
from pathlib import Path

from leadpay_config.loader import load_platform_config
from leadpay_config.schema import (
    CapPolicy,
    DatabaseConfig,
    DefaultTerms,
    LedgerPolicy,
    PersistencePolicy,
    PlatformConfig,
    TermsLimits,
)

__all__ = [
    "CapPolicy",
    "DatabaseConfig",
    "DefaultTerms",
    "LedgerPolicy",
    "PersistencePolicy",
    "PlatformConfig",
    "TermsLimits",
    "get_active_config",
]

_logger = logging.getLogger("leadpay_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> PlatformConfig:
    """
    Load the active platform configuration.

    Args:
        path: Explicit YAML path.  Falls back to ``LEADPAY_CONFIG`` and
            then to the packaged ``defaults.yaml``.

    Returns:
        A frozen ``PlatformConfig``.
    """
    config_path = Path(path or os.environ.get("LEADPAY_CONFIG") or DEFAULT_CONFIG_PATH)
    config = load_platform_config(config_path)

    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        config = replace(config, database=replace(config.database, url=database_url))

    _logger.info(
        "leadpay_config_loaded",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "path": str(config_path),
        },
    )
    return config
