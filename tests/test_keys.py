import pytest

from jobgate.rl.errors import InvalidLimitError
from jobgate.rl.keys import (
    SECONDS,
    parse_limits,
    parse_period,
    period_bucket,
    restriction_key,
    window_seconds,
)

NOW = 1700000000  # 2023-11-14T22:13:20Z


def test_fixed_window_keys():
    assert restriction_key("MyJob", "per_second", now=NOW) == f"restriction:MyJob:{NOW}"
    assert restriction_key("MyJob", "per_minute", now=NOW) == f"restriction:MyJob:{NOW // 60}"
    assert restriction_key("MyJob", "per_hour", now=NOW) == f"restriction:MyJob:{NOW // 3600}"
    assert restriction_key("MyJob", "per_day", now=NOW) == f"restriction:MyJob:{NOW // 86400}"
    assert restriction_key("MyJob", "per_week", now=NOW) == f"restriction:MyJob:{NOW // 604800}"


def test_calendar_keys_use_utc_dates():
    assert restriction_key("MyJob", "per_month", now=NOW) == "restriction:MyJob:2023-11"
    assert restriction_key("MyJob", "per_year", now=NOW) == "restriction:MyJob:2023"
    # one second before midnight UTC on new year's eve
    assert period_bucket("per_year", now=1704067199) == "2023"
    assert period_bucket("per_month", now=1704067200) == "2024-01"


def test_arbitrary_window_keys():
    assert restriction_key("MyJob", "per_1800", now=NOW) == f"restriction:MyJob:{NOW // 1800}"
    assert restriction_key("MyJob", "per_7200", now=NOW) == f"restriction:MyJob:{NOW // 7200}"


def test_concurrent_key():
    assert restriction_key("MyJob", "concurrent", ["anything"]) == "restriction:MyJob:*"


def test_custom_key_suffix():
    args = [{"foo": "bar"}]
    assert (
        restriction_key("MyJob", "per_minute_and_foo", args, now=NOW)
        == f"restriction:MyJob:bar:{NOW // 60}"
    )
    assert (
        restriction_key("MyJob", "per_1800_and_foo", args, now=NOW)
        == f"restriction:MyJob:bar:{NOW // 1800}"
    )
    assert restriction_key("MyJob", "concurrent_and_foo", args) == "restriction:MyJob:bar:*"


def test_custom_key_partitions_by_value():
    us = restriction_key("MyJob", "per_minute_and_region", [{"region": "us"}], now=NOW)
    eu = restriction_key("MyJob", "per_minute_and_region", [{"region": "eu"}], now=NOW)
    assert us != eu
    assert us.split(":")[2] == "us" and eu.split(":")[2] == "eu"


def test_custom_key_omitted_when_not_derivable():
    plain = f"restriction:MyJob:{NOW // 60}"
    assert restriction_key("MyJob", "per_minute_and_foo", [], now=NOW) == plain
    assert restriction_key("MyJob", "per_minute_and_foo", ["bar"], now=NOW) == plain
    assert restriction_key("MyJob", "per_minute_and_foo", [{"other": 1}], now=NOW) == plain


def test_window_seconds():
    assert window_seconds("per_minute") == 60
    assert window_seconds("per_hour") == 60 * 60
    assert window_seconds("per_day") == 24 * 60 * 60
    assert window_seconds("per_week") == 7 * 24 * 60 * 60
    assert window_seconds("per_month") == 31 * 24 * 60 * 60
    assert window_seconds("per_year") == 366 * 24 * 60 * 60
    assert window_seconds("per_minute_and_foo") == 60
    assert window_seconds("per_1800") == 1800
    assert window_seconds("per_1800_and_foo") == 1800
    assert window_seconds("concurrent") is None


def test_parse_period_fields():
    p = parse_period("per_month_and_region")
    assert p.name == "per_month"
    assert p.seconds == SECONDS["per_month"]
    assert p.calendar_format == "%Y-%m"
    assert p.custom_field == "region"
    assert not p.is_concurrent
    assert parse_period("concurrent").is_concurrent


def test_parse_limits_keeps_declaration_order():
    limits = parse_limits({"per_hour": 10, "concurrent": 2, "per_300": 2})
    assert [l.period.descriptor for l in limits] == ["per_hour", "concurrent", "per_300"]
    assert [l.cap for l in limits] == [10, 2, 2]


@pytest.mark.parametrize(
    "limits",
    [
        {"per_fortnight": 1},
        {"per_0": 1},
        {"per_-5": 1},
        {"per_minute_and_": 1},
        {"concurrency": 1},
        {"per_hour": -1},
        {"per_hour": "5"},
        {"per_hour": True},
        {"per_hour": 1.5},
        {"concurrent": 1, "concurrent_and_region": 2},
    ],
)
def test_parse_limits_rejects_malformed(limits):
    with pytest.raises(InvalidLimitError):
        parse_limits(limits)


def test_invalid_limit_is_value_error():
    with pytest.raises(ValueError):
        parse_period("per_eon")


def test_custom_field_is_the_segment_after_the_first_separator():
    p = parse_period("per_hour_and_region_and_zone")
    assert p.name == "per_hour"
    assert p.custom_field == "region"
    args = [{"region": "us", "zone": "a", "region_and_zone": "x"}]
    assert (
        restriction_key("MyJob", "per_hour_and_region_and_zone", args, now=NOW)
        == f"restriction:MyJob:us:{NOW // 3600}"
    )


def test_single_concurrent_limit_with_custom_field_is_allowed():
    limits = parse_limits({"per_hour": 5, "concurrent_and_region": 1})
    assert [l.period.is_concurrent for l in limits] == [False, True]
