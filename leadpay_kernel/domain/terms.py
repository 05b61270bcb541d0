"""
ContractTerms -- the negotiated pricing, cap and policy terms of a Connection.

Responsibility:
    Immutable value objects for contract terms plus their JSON-safe
    serialization.  Terms are replaced wholesale, never edited in place.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    None at construction.  Parsing keeps out-of-range values as given so
    that ``TermsValidator`` can report every violation with its bound.
    Structural garbage (a non-numeric rate, a non-integer cap) is rejected
    here with ``ValidationError``.

Payments are always per qualified lead submitted, never per conversion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from leadpay_kernel.domain.money import parse_amount
from leadpay_kernel.exceptions import ValidationError


class PaymentTiming(str, Enum):
    """When lead payouts are processed."""

    PER_LEAD = "per_lead"  # Paid immediately per lead
    WEEKLY = "weekly"  # Weekly batch payment
    BIWEEKLY = "biweekly"  # Bi-weekly batch payment
    MONTHLY = "monthly"  # Monthly batch payment

    @property
    def label(self) -> str:
        return _TIMING_LABELS[self]


_TIMING_LABELS = {
    PaymentTiming.PER_LEAD: "Per Lead",
    PaymentTiming.WEEKLY: "Weekly",
    PaymentTiming.BIWEEKLY: "Bi-weekly",
    PaymentTiming.MONTHLY: "Monthly",
}

CURRENT_AGREEMENT_VERSION = "1.0.0"


@dataclass(frozen=True)
class LeadCaps:
    """
    Caps on how many leads a buyer is obligated to pay for.

    ``None`` for a limit means unlimited for that window.
    ``pause_when_cap_reached`` only affects messaging: a denied submission
    is rejected until the next window either way.
    """

    weekly_limit: int | None = None
    monthly_limit: int | None = None
    pause_when_cap_reached: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "weeklyLimit": self.weekly_limit,
            "monthlyLimit": self.monthly_limit,
            "pauseWhenCapReached": self.pause_when_cap_reached,
        }


@dataclass(frozen=True)
class ContractTerms:
    """
    Full contract terms, set entirely by the Buyer.

    Contract:
        Value object.  Collections are normalized to frozensets so two
        terms with the same content compare equal.
    """

    rate_per_lead: Decimal
    payment_timing: PaymentTiming | str = PaymentTiming.PER_LEAD
    lead_types: frozenset[str] = field(default_factory=lambda: frozenset({"auto"}))
    exclusivity: bool = False
    termination_notice_days: int = 7
    lead_caps: LeadCaps | None = None
    licensed_states: frozenset[str] = field(default_factory=frozenset)
    compliance_acknowledged: bool = False
    agreement_version: str = CURRENT_AGREEMENT_VERSION
    minimum_payout_threshold: Decimal | None = None
    notes: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "lead_types", frozenset(self.lead_types))
        object.__setattr__(self, "licensed_states", frozenset(self.licensed_states))
        if isinstance(self.payment_timing, str) and not isinstance(
            self.payment_timing, PaymentTiming
        ):
            object.__setattr__(self, "payment_timing", _coerce_timing(self.payment_timing))

    @property
    def weekly_limit(self) -> int | None:
        return self.lead_caps.weekly_limit if self.lead_caps else None

    @property
    def monthly_limit(self) -> int | None:
        return self.lead_caps.monthly_limit if self.lead_caps else None

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation (camelCase, Decimal as string)."""
        timing = self.payment_timing
        return {
            "ratePerLead": str(self.rate_per_lead),
            "paymentTiming": timing.value if isinstance(timing, PaymentTiming) else timing,
            "leadTypes": sorted(self.lead_types),
            "exclusivity": self.exclusivity,
            "terminationNoticeDays": self.termination_notice_days,
            "leadCaps": self.lead_caps.to_dict() if self.lead_caps else None,
            "licensedStates": sorted(self.licensed_states),
            "complianceAcknowledged": self.compliance_acknowledged,
            "agreementVersion": self.agreement_version,
            "minimumPayoutThreshold": (
                str(self.minimum_payout_threshold)
                if self.minimum_payout_threshold is not None
                else None
            ),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContractTerms:
        """
        Parse terms from a dict using camelCase or snake_case keys.

        Also accepts the flat ``weeklyLeadCap`` / ``monthlyLeadCap`` /
        ``capStrategy`` form used by connection request payloads.

        Raises:
            ValidationError: If a field has the wrong shape.
        """
        rate = _get(data, "ratePerLead", "rate_per_lead")
        if rate is None:
            raise ValidationError(field="ratePerLead", message="ratePerLead is required")

        threshold = _get(data, "minimumPayoutThreshold", "minimum_payout_threshold")

        return cls(
            rate_per_lead=parse_amount(rate, "ratePerLead"),
            payment_timing=_get(data, "paymentTiming", "payment_timing", default="per_lead"),
            lead_types=_string_set(_get(data, "leadTypes", "lead_types", default=["auto"]), "leadTypes"),
            exclusivity=bool(_get(data, "exclusivity", default=False)),
            termination_notice_days=_int(
                _get(data, "terminationNoticeDays", "termination_notice_days", default=7),
                "terminationNoticeDays",
            ),
            lead_caps=_parse_caps(data),
            licensed_states=_string_set(
                _get(data, "licensedStates", "licensed_states", "allowedStates", default=[]),
                "licensedStates",
            ),
            compliance_acknowledged=bool(
                _get(data, "complianceAcknowledged", "compliance_acknowledged", default=False)
            ),
            agreement_version=str(
                _get(data, "agreementVersion", "agreement_version", default=CURRENT_AGREEMENT_VERSION)
            ),
            minimum_payout_threshold=(
                parse_amount(threshold, "minimumPayoutThreshold") if threshold is not None else None
            ),
            notes=_get(data, "notes"),
        )


def coerce_terms(terms: ContractTerms | dict[str, Any]) -> ContractTerms:
    """Accept either a ``ContractTerms`` or its dict form."""
    if isinstance(terms, ContractTerms):
        return terms
    if isinstance(terms, dict):
        return ContractTerms.from_dict(terms)
    raise ValidationError(
        field="terms",
        message=f"terms must be ContractTerms or dict, not {type(terms).__name__}",
    )


def _coerce_timing(value: str) -> PaymentTiming | str:
    try:
        return PaymentTiming(value)
    except ValueError:
        # Left raw so the validator reports it against the allowed set
        return value


def _get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            field=field_name,
            message=f"{field_name} must be an integer",
            value=value,
        )
    return value


def _optional_int(value: Any, field_name: str) -> int | None:
    if value is None:
        return None
    return _int(value, field_name)


def _string_set(value: Any, field_name: str) -> frozenset[str]:
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ValidationError(
            field=field_name, message=f"{field_name} must be a list of strings", value=value
        )
    return frozenset(value)


def _parse_caps(data: dict[str, Any]) -> LeadCaps | None:
    caps = _get(data, "leadCaps", "lead_caps")
    if caps is not None:
        if not isinstance(caps, dict):
            raise ValidationError(field="leadCaps", message="leadCaps must be an object")
        return LeadCaps(
            weekly_limit=_optional_int(_get(caps, "weeklyLimit", "weekly_limit"), "leadCaps.weeklyLimit"),
            monthly_limit=_optional_int(_get(caps, "monthlyLimit", "monthly_limit"), "leadCaps.monthlyLimit"),
            pause_when_cap_reached=bool(
                _get(caps, "pauseWhenCapReached", "pause_when_cap_reached", default=True)
            ),
        )

    weekly = _get(data, "weeklyLeadCap", "weekly_lead_cap")
    monthly = _get(data, "monthlyLeadCap", "monthly_lead_cap")
    if weekly is None and monthly is None:
        return None
    strategy = _get(data, "capStrategy", "cap_strategy", default="pause")
    return LeadCaps(
        weekly_limit=_optional_int(weekly, "weeklyLeadCap"),
        monthly_limit=_optional_int(monthly, "monthlyLeadCap"),
        pause_when_cap_reached=strategy != "reject",
    )
