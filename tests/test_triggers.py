from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from matrixci.errors import ConfigurationError
from matrixci.model import Event, PullRequestTrigger, PushTrigger, ScheduleTrigger
from matrixci.triggers import branch_matches, cron_fires_at, matching_trigger, should_run, validate_cron

TRIGGERS = (
    PushTrigger(branches=("main",)),
    PullRequestTrigger(),
    ScheduleTrigger(cron="0 0 1 * *"),
)
UTC = timezone.utc


def test_push_to_configured_branch_runs():
    assert should_run(Event("push", branch="main"), TRIGGERS)
    assert should_run(Event("push", branch="refs/heads/main"), TRIGGERS)


def test_push_to_other_branch_does_not_run():
    assert not should_run(Event("push", branch="feature/x"), TRIGGERS)
    assert not should_run(Event("push", branch=None), TRIGGERS)


def test_branch_filters_accept_globs():
    assert branch_matches("release/1.2", ["release/*"])
    assert not branch_matches("main", ["release/*"])


def test_single_star_stays_within_one_path_segment():
    assert not branch_matches("release/a/b", ["release/*"])
    assert branch_matches("release/a/b", ["release/**"])
    assert branch_matches("v1", ["v?"])
    assert not branch_matches("v/", ["v?"])
    assert branch_matches("hotfix.1", ["hotfix.1"])
    assert not branch_matches("hotfixx1", ["hotfix.1"])


def test_push_without_branch_filter_matches_everything():
    assert should_run(Event("push", branch="anything"), (PushTrigger(),))


def test_pull_request_runs_only_when_declared():
    assert should_run(Event("pull_request", branch="feature"), TRIGGERS)
    assert not should_run(Event("pull_request"), (PushTrigger(branches=("main",)),))


def test_pull_request_branch_filter_applies_to_target_branch():
    triggers = (PullRequestTrigger(branches=("release",)),)
    assert should_run(Event("pull_request", branch="release"), triggers)
    assert not should_run(Event("pull_request", branch="feature"), triggers)
    assert not should_run(Event("pull_request"), triggers)


def test_monthly_cron_fires_at_first_second_of_month():
    first = datetime(2025, 3, 1, 0, 0, 0, tzinfo=UTC)
    assert cron_fires_at("0 0 1 * *", first)
    assert cron_fires_at("0 0 1 * *", first + timedelta(milliseconds=500))
    assert not cron_fires_at("0 0 1 * *", first + timedelta(seconds=1))
    assert not cron_fires_at("0 0 1 * *", first + timedelta(minutes=1))
    assert not cron_fires_at("0 0 1 * *", datetime(2025, 3, 2, 0, 0, 0, tzinfo=UTC))
    assert not cron_fires_at("0 0 1 * *", first - timedelta(seconds=1))


def test_cron_evaluates_in_utc():
    # naive timestamps are UTC; aware ones are converted
    assert cron_fires_at("0 0 1 * *", datetime(2025, 3, 1))
    plus_one = timezone(timedelta(hours=1))
    assert cron_fires_at("0 0 1 * *", datetime(2025, 3, 1, 1, 0, 0, tzinfo=plus_one))


def test_schedule_event_matches_schedule_trigger():
    event = Event("schedule", timestamp=datetime(2025, 4, 1, tzinfo=UTC))
    assert matching_trigger(event, TRIGGERS) == ScheduleTrigger(cron="0 0 1 * *")
    assert not should_run(Event("schedule", timestamp=datetime(2025, 4, 15, tzinfo=UTC)), TRIGGERS)


def test_event_kind_without_trigger_never_matches():
    assert not should_run(Event("schedule", timestamp=datetime(2025, 4, 1, tzinfo=UTC)), TRIGGERS[:2])


def test_invalid_cron_is_configuration_error():
    with pytest.raises(ConfigurationError):
        validate_cron("every day at noon")


def test_unknown_event_kind_is_rejected():
    with pytest.raises(ValueError):
        Event("tag")
