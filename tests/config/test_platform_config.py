"""Platform configuration: packaged defaults, overrides and validation."""

from decimal import Decimal

import pytest
import yaml

from leadpay_config import PlatformConfig, get_active_config
from leadpay_config.loader import compute_checksum, parse_platform_config


def write_config(tmp_path, data) -> str:
    path = tmp_path / "leadpay.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestDefaults:
    def test_packaged_defaults(self, monkeypatch):
        monkeypatch.delenv("LEADPAY_CONFIG", raising=False)
        monkeypatch.delenv("DATABASE_URL", raising=False)

        config = get_active_config()

        assert config.config_id == "leadpay-default"
        assert config.terms_limits.min_rate_per_lead == Decimal("5")
        assert config.terms_limits.max_rate_per_lead == Decimal("500")
        assert config.default_terms.rate_per_lead == Decimal("50")
        assert config.cap_policy.timezone == "UTC"
        assert config.persistence.cas_max_attempts == 5
        assert len(config.checksum) == 64

    def test_schema_defaults_match_packaged_file(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        packaged = get_active_config()
        bare = PlatformConfig(config_id="x", version=1)

        assert packaged.terms_limits == bare.terms_limits
        assert packaged.default_terms == bare.default_terms
        assert packaged.persistence == bare.persistence

    def test_load_is_logged(self, captured_logs):
        config = get_active_config()
        record = next(r for r in captured_logs() if r["message"] == "leadpay_config_loaded")
        assert record["checksum"] == config.checksum


class TestOverrides:
    def test_explicit_path(self, tmp_path):
        path = write_config(
            tmp_path,
            {
                "config_id": "staging",
                "version": 3,
                "terms_limits": {"min_rate_per_lead": "10", "max_rate_per_lead": "250"},
                "cap_policy": {"timezone": "America/Chicago"},
            },
        )

        config = get_active_config(path)

        assert config.config_id == "staging"
        assert config.version == 3
        assert config.terms_limits.max_rate_per_lead == Decimal("250")
        assert config.cap_policy.timezone == "America/Chicago"
        # Unspecified sections keep their defaults
        assert config.ledger_policy.currency == "USD"

    def test_env_path_and_database_url(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LEADPAY_CONFIG", write_config(tmp_path, {"config_id": "env", "version": 2}))
        monkeypatch.setenv("DATABASE_URL", "postgresql://leadpay@db/leadpay")

        config = get_active_config()

        assert config.config_id == "env"
        assert config.database.url == "postgresql://leadpay@db/leadpay"

    def test_yaml_float_rates_parsed_exactly(self):
        config = parse_platform_config(
            {"config_id": "f", "version": 1, "terms_limits": {"min_rate_per_lead": 7.5}}
        )
        assert config.terms_limits.min_rate_per_lead == Decimal("7.5")

    def test_checksum_tracks_content(self):
        a = {"config_id": "a", "version": 1}
        b = {"config_id": "a", "version": 2}
        assert compute_checksum(a) == compute_checksum(dict(a))
        assert compute_checksum(a) != compute_checksum(b)


class TestValidation:
    @pytest.mark.parametrize(
        "section, values",
        [
            ("terms_limits", {"min_rate_per_lead": "600", "max_rate_per_lead": "500"}),
            ("terms_limits", {"min_rate_per_lead": "0"}),
            ("terms_limits", {"max_weekly_cap": 0}),
            ("persistence", {"max_retries": -1}),
            ("persistence", {"cas_max_attempts": 0}),
        ],
    )
    def test_invalid_bounds(self, section, values):
        with pytest.raises(ValueError):
            parse_platform_config({"config_id": "bad", "version": 1, section: values})

    def test_non_numeric_rate(self):
        with pytest.raises(ValueError):
            parse_platform_config(
                {"config_id": "bad", "version": 1, "terms_limits": {"min_rate_per_lead": "cheap"}}
            )

    def test_config_id_required(self):
        with pytest.raises(KeyError):
            parse_platform_config({"version": 1})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml")
