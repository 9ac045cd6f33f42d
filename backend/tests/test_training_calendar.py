from __future__ import annotations

import datetime as dt

import pytest

from kartpass_core.training import (
    TrainingRule,
    training_days,
    training_days_from_settings,
    weekday_index,
)


def test_weekday_index_starts_on_sunday() -> None:
    assert weekday_index(dt.date(2024, 5, 5)) == 0
    assert weekday_index(dt.date(2024, 5, 6)) == 1
    assert weekday_index(dt.date(2024, 5, 4)) == 6


def test_training_days_for_tuesdays_and_thursdays_in_may() -> None:
    rules = [TrainingRule(id="may", month=4, days_of_week=[2, 4])]

    days = training_days(2024, rules, include_past=True)

    assert days == [
        "2024-05-02",
        "2024-05-07",
        "2024-05-09",
        "2024-05-14",
        "2024-05-16",
        "2024-05-21",
        "2024-05-23",
        "2024-05-28",
        "2024-05-30",
    ]


def test_training_days_skip_past_dates() -> None:
    rules = [TrainingRule(id="may", month=4, days_of_week=[2, 4])]

    days = training_days(2024, rules, today=dt.date(2024, 5, 16))

    assert days == ["2024-05-16", "2024-05-21", "2024-05-23", "2024-05-28", "2024-05-30"]


def test_overlapping_rules_do_not_duplicate_days() -> None:
    rules = [
        TrainingRule(id="a", month=5, days_of_week=[3]),
        TrainingRule(id="b", month=5, days_of_week=[3, 6]),
    ]

    days = training_days(2024, rules, include_past=True)

    assert len(days) == len(set(days))
    assert "2024-06-05" in days
    assert "2024-06-01" in days


def test_training_days_from_settings() -> None:
    settings = {"id": "main", "year": 2024, "rules": [{"id": "jun", "month": 5, "daysOfWeek": [3]}]}

    days = training_days_from_settings(settings, include_past=True)

    assert days == ["2024-06-05", "2024-06-12", "2024-06-19", "2024-06-26"]


def test_rule_rejects_invalid_month_and_day() -> None:
    with pytest.raises(ValueError, match="måned"):
        TrainingRule.from_dict({"month": 12, "daysOfWeek": [1]})
    with pytest.raises(ValueError, match="ukedag"):
        TrainingRule.from_dict({"month": 1, "daysOfWeek": [7]})
