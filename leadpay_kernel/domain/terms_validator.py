"""TermsValidator -- Pure validation of proposed contract terms.

No side effects, no I/O; safe to call repeatedly and from many threads.
Every violation names the field and, for range checks, the exact bound so
the caller can surface an actionable message.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from leadpay_kernel.domain.money import decimal_places
from leadpay_kernel.domain.terms import ContractTerms, LeadCaps, PaymentTiming
from leadpay_kernel.exceptions import ValidationError
from leadpay_kernel.logging_config import get_logger

logger = get_logger("domain.terms_validator")

_STATE_CODE = re.compile(r"^[A-Z]{2}$")


@dataclass(frozen=True)
class TermsLimits:
    """Bounds enforced by the validator.  Populated from leadpay_config."""

    min_rate_per_lead: Decimal = Decimal("5")
    max_rate_per_lead: Decimal = Decimal("500")
    max_weekly_cap: int = 1000
    max_monthly_cap: int = 10000
    max_message_length: int = 500
    rate_decimal_places: int = 2


@dataclass(frozen=True)
class TermsViolation:
    """A single rule violation."""

    code: str
    field: str
    message: str
    bound: Any = None
    value: Any = None


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a set of terms.

    ``bool(result)`` is True only when there are no violations.
    """

    is_valid: bool
    violations: tuple[TermsViolation, ...] = field(default_factory=tuple)

    @classmethod
    def success(cls) -> ValidationResult:
        return cls(is_valid=True, violations=())

    @classmethod
    def failure(cls, *violations: TermsViolation) -> ValidationResult:
        return cls(is_valid=False, violations=tuple(violations))

    def __bool__(self) -> bool:
        return self.is_valid

    def to_error(self) -> ValidationError:
        """Exception for the first violation, carrying all of them."""
        first = self.violations[0]
        return ValidationError(
            field=first.field,
            message=first.message,
            bound=first.bound,
            value=first.value,
            violations=self.violations,
        )


class TermsValidator:
    """Validates ``ContractTerms`` against the configured ``TermsLimits``."""

    def __init__(self, limits: TermsLimits | None = None):
        self._limits = limits or TermsLimits()

    @property
    def limits(self) -> TermsLimits:
        return self._limits

    def validate(self, terms: ContractTerms) -> ValidationResult:
        violations: list[TermsViolation] = []
        violations.extend(self.validate_rate(terms.rate_per_lead))
        violations.extend(self._validate_timing(terms.payment_timing))
        violations.extend(self._validate_caps(terms.lead_caps))
        violations.extend(self._validate_notice(terms.termination_notice_days))
        violations.extend(self._validate_states(terms.licensed_states))
        violations.extend(self._validate_lead_types(terms.lead_types))
        violations.extend(self._validate_threshold(terms.minimum_payout_threshold))

        if violations:
            logger.debug(
                "terms_validation_failed",
                extra={
                    "violation_count": len(violations),
                    "violation_fields": [v.field for v in violations],
                },
            )
            return ValidationResult.failure(*violations)
        return ValidationResult.success()

    def require_valid(self, terms: ContractTerms) -> ContractTerms:
        """Return ``terms`` unchanged or raise ``ValidationError``."""
        result = self.validate(terms)
        if not result:
            raise result.to_error()
        return terms

    def validate_rate(self, rate: Decimal) -> list[TermsViolation]:
        """Fair-market bounds on the per-lead rate."""
        limits = self._limits
        if not isinstance(rate, Decimal) or not rate.is_finite():
            return [
                TermsViolation(
                    code="RATE_NOT_DECIMAL",
                    field="ratePerLead",
                    message="ratePerLead must be a finite Decimal",
                    value=rate,
                )
            ]
        if rate < limits.min_rate_per_lead:
            return [
                TermsViolation(
                    code="RATE_BELOW_MINIMUM",
                    field="ratePerLead",
                    message=f"Minimum rate is ${limits.min_rate_per_lead} per lead",
                    bound=limits.min_rate_per_lead,
                    value=rate,
                )
            ]
        if rate > limits.max_rate_per_lead:
            return [
                TermsViolation(
                    code="RATE_ABOVE_MAXIMUM",
                    field="ratePerLead",
                    message=(
                        f"Maximum rate is ${limits.max_rate_per_lead} per lead "
                        "to ensure fair market competition"
                    ),
                    bound=limits.max_rate_per_lead,
                    value=rate,
                )
            ]
        if decimal_places(rate) > limits.rate_decimal_places:
            return [
                TermsViolation(
                    code="RATE_PRECISION",
                    field="ratePerLead",
                    message=f"ratePerLead allows at most {limits.rate_decimal_places} decimal places",
                    bound=limits.rate_decimal_places,
                    value=rate,
                )
            ]
        return []

    def _validate_timing(self, timing: PaymentTiming | str) -> list[TermsViolation]:
        if isinstance(timing, PaymentTiming):
            return []
        allowed = [t.value for t in PaymentTiming]
        return [
            TermsViolation(
                code="INVALID_PAYMENT_TIMING",
                field="paymentTiming",
                message=f"paymentTiming must be one of {', '.join(allowed)}",
                bound=allowed,
                value=timing,
            )
        ]

    def _validate_caps(self, caps: LeadCaps | None) -> list[TermsViolation]:
        if caps is None:
            return []
        violations = []
        for name, limit, maximum in (
            ("leadCaps.weeklyLimit", caps.weekly_limit, self._limits.max_weekly_cap),
            ("leadCaps.monthlyLimit", caps.monthly_limit, self._limits.max_monthly_cap),
        ):
            if limit is None:
                continue
            if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
                violations.append(
                    TermsViolation(
                        code="CAP_NOT_POSITIVE",
                        field=name,
                        message=f"{name} must be a positive integer",
                        bound=1,
                        value=limit,
                    )
                )
            elif limit > maximum:
                violations.append(
                    TermsViolation(
                        code="CAP_ABOVE_MAXIMUM",
                        field=name,
                        message=f"{name} may not exceed {maximum}",
                        bound=maximum,
                        value=limit,
                    )
                )
        return violations

    def _validate_notice(self, days: int) -> list[TermsViolation]:
        if isinstance(days, bool) or not isinstance(days, int) or days < 0:
            return [
                TermsViolation(
                    code="NEGATIVE_NOTICE_PERIOD",
                    field="terminationNoticeDays",
                    message="terminationNoticeDays must be an integer >= 0",
                    bound=0,
                    value=days,
                )
            ]
        return []

    def _validate_states(self, states: frozenset[str]) -> list[TermsViolation]:
        invalid = sorted(
            str(s) for s in states if not isinstance(s, str) or not _STATE_CODE.match(s)
        )
        if invalid:
            return [
                TermsViolation(
                    code="INVALID_STATE_CODE",
                    field="licensedStates",
                    message=f"Invalid state code(s): {', '.join(invalid)}",
                    value=invalid,
                )
            ]
        return []

    def _validate_lead_types(self, lead_types: frozenset[str]) -> list[TermsViolation]:
        if any(not isinstance(t, str) or not t.strip() for t in lead_types):
            return [
                TermsViolation(
                    code="INVALID_LEAD_TYPE",
                    field="leadTypes",
                    message="leadTypes must be non-empty strings",
                )
            ]
        return []

    def _validate_threshold(self, threshold: Decimal | None) -> list[TermsViolation]:
        if threshold is not None and threshold < 0:
            return [
                TermsViolation(
                    code="NEGATIVE_PAYOUT_THRESHOLD",
                    field="minimumPayoutThreshold",
                    message="minimumPayoutThreshold must be >= 0",
                    bound=Decimal("0"),
                    value=threshold,
                )
            ]
        return []
