# triggers.py
# Decides whether an incoming event starts a workflow run. Pure predicates,
# no side effects.
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Iterable, Optional

from croniter import croniter

from .errors import ConfigurationError
from .model import Event, PullRequestTrigger, PushTrigger, ScheduleTrigger, Trigger


def validate_cron(expression: str) -> None:
    if not croniter.is_valid(expression):
        raise ConfigurationError(f"Invalid cron expression: {expression!r}")


def _normalize_branch(branch: str) -> str:
    prefix = "refs/heads/"
    return branch[len(prefix):] if branch.startswith(prefix) else branch


@lru_cache(maxsize=256)
def _branch_pattern(pattern: str) -> re.Pattern:
    # `*` and `?` stay inside one path segment, `**` crosses segments
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out) + r"\Z")


def branch_matches(branch: str | None, filters: Iterable[str]) -> bool:
    filters = list(filters)
    # no filter -> every branch
    if not filters:
        return True
    if not branch:
        return False
    name = _normalize_branch(branch)
    return any(name == f or _branch_pattern(f).match(name) for f in filters)


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def cron_fires_at(expression: str, timestamp: datetime) -> bool:
    """
    True iff `timestamp` (truncated to whole seconds) is an exact firing
    instant of the cron expression. For "0 0 1 * *" that is only
    YYYY-MM-01T00:00:00 UTC.
    """
    at = _utc(timestamp).replace(microsecond=0)
    nxt = croniter(expression, at - timedelta(seconds=1)).get_next(datetime)
    return _utc(nxt) == at


def trigger_matches(trigger: Trigger, event: Event) -> bool:
    if event.kind != trigger.kind:
        return False
    if isinstance(trigger, (PushTrigger, PullRequestTrigger)):
        return branch_matches(event.branch, trigger.branches)
    if isinstance(trigger, ScheduleTrigger):
        return cron_fires_at(trigger.cron, event.timestamp)
    raise TypeError(f"Unknown trigger type: {type(trigger).__name__}")


def matching_trigger(event: Event, triggers: Iterable[Trigger]) -> Optional[Trigger]:
    for trigger in triggers:
        if trigger_matches(trigger, event):
            return trigger
    return None


def should_run(event: Event, triggers: Iterable[Trigger]) -> bool:
    """Whether `event` starts a run of a workflow declaring `triggers`."""
    return matching_trigger(event, triggers) is not None


def describe(trigger: Trigger) -> str:
    if isinstance(trigger, (PushTrigger, PullRequestTrigger)):
        branches = ", ".join(trigger.branches) if trigger.branches else "any branch"
        return f"{trigger.kind} ({branches})"
    if isinstance(trigger, ScheduleTrigger):
        return f"schedule ({trigger.cron})"
    return trigger.kind
