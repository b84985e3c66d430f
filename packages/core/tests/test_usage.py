"""Tests for free-tier usage counters."""

from __future__ import annotations

import json
import stat
from datetime import UTC, datetime

import pytest

from tessera.licensing.tiers import Tier
from tessera.licensing.usage import Operation, UsageTracker


class MonthClock:
    def __init__(self, year: int = 2026, month: int = 4):
        self.value = datetime(year, month, 15, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.value


@pytest.fixture
def clock():
    return MonthClock()


@pytest.fixture
def tracker(tmp_path, clock):
    return UsageTracker(tmp_path / "home", clock=clock)


def test_fresh_counters(tracker):
    counters = tracker.load(Tier.FREE)
    assert counters.month == "2026-04"
    assert counters.pre_push_runs == 0


def test_increment_and_persist(tracker):
    tracker.increment(Tier.FREE, Operation.PRE_PUSH)
    tracker.increment(Tier.FREE, "pre-push", amount=2)
    tracker.increment(Tier.FREE, Operation.REPO, repo_id="repo-a")
    tracker.increment(Tier.FREE, Operation.REPO, repo_id="repo-a")

    data = json.loads(tracker.path.read_text())
    assert data["prePushRuns"] == 3
    assert data["repos"] == ["repo-a"]
    assert stat.S_IMODE(tracker.path.stat().st_mode) == 0o600


def test_free_limit_enforced(tracker):
    assert tracker.check(Tier.FREE, Operation.REPO).allowed
    tracker.increment(Tier.FREE, Operation.REPO, repo_id="repo-a")
    decision = tracker.check(Tier.FREE, Operation.REPO)
    assert not decision.allowed
    assert decision.used == 1
    assert "limit reached" in decision.reason


def test_pro_is_unlimited(tracker):
    assert tracker.increment(Tier.PRO, Operation.PRE_PUSH) is None
    assert tracker.check(Tier.PRO, Operation.PRE_PUSH).allowed
    assert tracker.summary(Tier.PRO).unlimited
    assert not tracker.path.exists()


def test_month_rollover_keeps_repos(tracker, clock):
    tracker.increment(Tier.FREE, Operation.PRE_PUSH, amount=50)
    tracker.increment(Tier.FREE, Operation.REPO, repo_id="repo-a")
    assert not tracker.check(Tier.FREE, Operation.PRE_PUSH).allowed

    clock.value = datetime(2026, 5, 1, tzinfo=UTC)
    counters = tracker.load(Tier.FREE)
    assert counters.month == "2026-05"
    assert counters.pre_push_runs == 0
    assert counters.repos == ["repo-a"]


def test_corrupt_file_maxes_out_free_tier(tracker):
    tracker.directory.mkdir(parents=True)
    tracker.path.write_text("{oops")

    for op in Operation:
        assert not tracker.check(Tier.FREE, op).allowed
    assert list(tracker.directory.glob("usage.json.corrupted.*"))


def test_corrupt_file_does_not_block_pro(tracker):
    tracker.directory.mkdir(parents=True)
    tracker.path.write_text("{oops")
    assert tracker.load(Tier.PRO).pre_push_runs == 0


def test_summary(tracker):
    tracker.increment(Tier.FREE, Operation.DEPENDENCY_PR, amount=4)
    summary = tracker.summary(Tier.FREE)
    assert summary.month == "2026-04"
    assert summary.counts["dependency-pr"] == {"used": 4, "limit": 10, "remaining": 6}
    assert summary.counts["pre-push"]["remaining"] == 50
