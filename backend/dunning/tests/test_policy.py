from decimal import Decimal

import pytest
from django.core.exceptions import ImproperlyConfigured

from dunning.services.policy import DunningPolicy, PolicyRegistry, load_policy_registry


def test_default_policy_values():
    policy = DunningPolicy()

    assert policy.max_retries == 3
    assert policy.retry_intervals_days == (1, 3, 7)
    assert policy.grace_period_days == 14
    assert policy.email_on_first_failure is True
    assert policy.email_on_final_failure is True
    assert policy.late_fee_after_retry is None


def test_last_interval_repeats():
    policy = DunningPolicy(max_retries=6, retry_intervals_days=[2, 5])

    assert [policy.retry_interval_days(n) for n in range(1, 6)] == [2, 5, 5, 5, 5]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_retries": 0},
        {"retry_intervals_days": ()},
        {"retry_intervals_days": (1, -2)},
        {"grace_period_days": -1},
        {"late_fee_after_retry": 2},
        {"late_fee_amount": "not-a-number", "late_fee_after_retry": 1},
    ],
)
def test_invalid_policy_is_rejected(kwargs):
    with pytest.raises(ImproperlyConfigured):
        DunningPolicy(**kwargs)


def test_late_fee_amount_is_coerced_to_decimal():
    policy = DunningPolicy(late_fee_after_retry=2, late_fee_amount="4.50")

    assert policy.late_fee_amount == Decimal("4.50")
    assert policy.to_dict()["late_fee_amount"] == "4.50"


def test_from_mapping_rejects_unknown_keys():
    with pytest.raises(ImproperlyConfigured, match="max_attempts"):
        DunningPolicy.from_mapping({"max_attempts": 4})


def test_gateway_overrides_inherit_from_default():
    registry = PolicyRegistry.from_settings(
        {"max_retries": 4, "grace_period_days": 10},
        {"stripe": {"retry_intervals_days": [2, 4]}},
    )

    stripe = registry.for_gateway("stripe")
    assert stripe.max_retries == 4
    assert stripe.grace_period_days == 10
    assert stripe.retry_intervals_days == (2, 4)
    assert registry.for_gateway("paypal") is registry.default
    assert registry.for_gateway("") is registry.default
    assert registry.to_dict()["gateways"]["stripe"]["retry_intervals_days"] == [2, 4]


def test_registry_loads_from_settings(settings):
    settings.DUNNING = {
        "POLICY": {"max_retries": 5},
        "GATEWAY_POLICIES": {"airwallex": {"email_on_first_failure": False}},
    }

    registry = load_policy_registry()

    assert registry.default.max_retries == 5
    assert registry.for_gateway("airwallex").email_on_first_failure is False
    assert registry.for_gateway("airwallex").max_retries == 5


def test_registry_rejects_bad_gateway_policy(settings):
    settings.DUNNING = {"GATEWAY_POLICIES": {"stripe": {"max_retries": 0}}}

    with pytest.raises(ImproperlyConfigured):
        load_policy_registry()
