"""Retry policy values and the per-gateway policy registry."""
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


@dataclass(frozen=True)
class DunningPolicy:
    max_retries: int = 3
    retry_intervals_days: Tuple[int, ...] = (1, 3, 7)
    grace_period_days: int = 14
    email_on_first_failure: bool = True
    email_on_final_failure: bool = True
    late_fee_after_retry: Optional[int] = None
    late_fee_amount: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, "retry_intervals_days", tuple(self.retry_intervals_days))
        if self.late_fee_amount is not None and not isinstance(self.late_fee_amount, Decimal):
            try:
                object.__setattr__(self, "late_fee_amount", Decimal(str(self.late_fee_amount)))
            except InvalidOperation as exc:
                raise ImproperlyConfigured(f"Invalid dunning late_fee_amount: {self.late_fee_amount!r}") from exc
        self.validate()

    def validate(self) -> None:
        if not isinstance(self.max_retries, int) or self.max_retries < 1:
            raise ImproperlyConfigured("Dunning max_retries must be an integer >= 1.")
        if not self.retry_intervals_days:
            raise ImproperlyConfigured("Dunning retry_intervals_days must contain at least one interval.")
        if any(not isinstance(days, int) or days < 0 for days in self.retry_intervals_days):
            raise ImproperlyConfigured("Dunning retry intervals must be non-negative integers.")
        if not isinstance(self.grace_period_days, int) or self.grace_period_days < 0:
            raise ImproperlyConfigured("Dunning grace_period_days must be a non-negative integer.")
        if (self.late_fee_after_retry is None) != (self.late_fee_amount is None):
            raise ImproperlyConfigured("Dunning late_fee_after_retry and late_fee_amount must be set together.")

    def retry_interval_days(self, attempt_number: int) -> int:
        """Days to wait after the given failed attempt; the last interval repeats."""

        if attempt_number < 1:
            raise ValueError("attempt_number starts at 1")
        index = min(attempt_number - 1, len(self.retry_intervals_days) - 1)
        return self.retry_intervals_days[index]

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]], *, base: Optional["DunningPolicy"] = None) -> "DunningPolicy":
        base = base or cls()
        if not data:
            return base
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ImproperlyConfigured(f"Unknown dunning policy keys: {', '.join(sorted(unknown))}")
        return replace(base, **dict(data))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "retry_intervals_days": list(self.retry_intervals_days),
            "grace_period_days": self.grace_period_days,
            "email_on_first_failure": self.email_on_first_failure,
            "email_on_final_failure": self.email_on_final_failure,
            "late_fee_after_retry": self.late_fee_after_retry,
            "late_fee_amount": str(self.late_fee_amount) if self.late_fee_amount is not None else None,
        }


@dataclass(frozen=True)
class PolicyRegistry:
    """Default policy plus per-gateway overrides keyed by gateway id."""

    default: DunningPolicy = field(default_factory=DunningPolicy)
    overrides: Mapping[str, DunningPolicy] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "overrides", dict(self.overrides))

    def for_gateway(self, gateway: Optional[str]) -> DunningPolicy:
        if gateway and gateway in self.overrides:
            return self.overrides[gateway]
        return self.default

    @classmethod
    def from_settings(cls, policy: Optional[Mapping[str, Any]] = None,
                      gateway_policies: Optional[Mapping[str, Mapping[str, Any]]] = None) -> "PolicyRegistry":
        default = DunningPolicy.from_mapping(policy)
        overrides = {
            gateway: DunningPolicy.from_mapping(values, base=default)
            for gateway, values in (gateway_policies or {}).items()
        }
        return cls(default=default, overrides=overrides)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default": self.default.to_dict(),
            "gateways": {gateway: policy.to_dict() for gateway, policy in self.overrides.items()},
        }


def get_dunning_settings() -> Dict[str, Any]:
    return dict(getattr(settings, "DUNNING", {}) or {})


def load_policy_registry() -> PolicyRegistry:
    config = get_dunning_settings()
    return PolicyRegistry.from_settings(config.get("POLICY"), config.get("GATEWAY_POLICIES"))
