"""Monthly free-tier usage counters kept next to the local license.

Counters only gate free-tier quotas; they are not part of the trust
boundary and are never signed.
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tessera.errors import StorageError
from tessera.storage.blobs import atomic_write

from .local import resolve_license_dir
from .tiers import Tier, features_for

logger = logging.getLogger("tessera.licensing.usage")

USAGE_FILE = "usage.json"


class Operation(StrEnum):
    PRE_PUSH = "pre-push"
    DEPENDENCY_PR = "dependency-pr"
    REPO = "repo"


class UsageCounters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    month: str
    pre_push_runs: int = Field(default=0, alias="prePushRuns")
    dependency_prs: int = Field(default=0, alias="dependencyPRs")
    repos: list[str] = Field(default_factory=list)


@dataclass
class UsageDecision:
    allowed: bool
    reason: str = ""
    used: int = 0
    limit: float = 0


@dataclass
class UsageSummary:
    tier: Tier
    unlimited: bool
    month: str = ""
    counts: dict[str, dict[str, float]] = field(default_factory=dict)


def _month_of(now: datetime) -> str:
    return f"{now.year}-{now.month:02d}"


def _free_caps() -> dict[Operation, int]:
    free = features_for(Tier.FREE)
    return {
        Operation.PRE_PUSH: int(free.max_pre_push_runs_per_month),
        Operation.DEPENDENCY_PR: int(free.max_dependency_prs_per_month),
        Operation.REPO: int(free.max_private_repos),
    }


class UsageTracker:
    """Per-month counters persisted in ``usage.json`` (mode 0600)."""

    def __init__(
        self,
        license_dir: str | Path | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.directory = resolve_license_dir(license_dir)
        self.path = self.directory / USAGE_FILE
        self._clock = clock

    def _fresh(self) -> UsageCounters:
        return UsageCounters(month=_month_of(self._clock()))

    def _maxed_out(self) -> UsageCounters:
        caps = _free_caps()
        return UsageCounters(
            month=_month_of(self._clock()),
            pre_push_runs=caps[Operation.PRE_PUSH],
            dependency_prs=caps[Operation.DEPENDENCY_PR],
            repos=[f"corrupted-{i + 1}" for i in range(caps[Operation.REPO])],
        )

    def load(self, tier: Tier) -> UsageCounters:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self._fresh()
        except OSError as exc:
            raise StorageError(f"Cannot read usage file: {exc}") from exc

        try:
            counters = UsageCounters.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            backup = self.path.with_name(f"{self.path.name}.corrupted.{int(time.time() * 1000)}")
            try:
                shutil.copyfile(self.path, backup)
            except OSError as exc:
                logger.warning("Could not back up corrupted usage file: %s", exc)
            logger.error("Usage file is corrupted, backup at %s", backup)
            if tier is Tier.FREE:
                # Corruption must not reset a free quota
                return self._maxed_out()
            return self._fresh()

        current = _month_of(self._clock())
        if counters.month != current:
            return UsageCounters(month=current, repos=counters.repos)
        return counters

    def save(self, tier: Tier, counters: UsageCounters) -> None:
        data = json.dumps(counters.model_dump(by_alias=True), indent=2).encode("utf-8")
        try:
            self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            atomic_write(self.path, data, mode=0o600)
        except OSError as exc:
            if tier is Tier.FREE:
                raise StorageError(f"Cannot save usage data: {exc}") from exc
            logger.warning("Failed to save usage data: %s", exc)

    def check(self, tier: Tier, operation: Operation | str) -> UsageDecision:
        if tier is not Tier.FREE:
            return UsageDecision(allowed=True, limit=float("inf"))
        op = Operation(operation)
        counters = self.load(tier)
        limit = _free_caps()[op]
        used = self._used(counters, op)
        if used >= limit:
            return UsageDecision(
                allowed=False,
                reason=f"FREE tier limit reached: {used}/{limit} {op.value} this month",
                used=used,
                limit=limit,
            )
        return UsageDecision(allowed=True, used=used, limit=limit)

    @staticmethod
    def _used(counters: UsageCounters, op: Operation) -> int:
        match op:
            case Operation.PRE_PUSH:
                return counters.pre_push_runs
            case Operation.DEPENDENCY_PR:
                return counters.dependency_prs
            case Operation.REPO:
                return len(counters.repos)

    def increment(
        self,
        tier: Tier,
        operation: Operation | str,
        amount: int = 1,
        repo_id: str | None = None,
    ) -> UsageCounters | None:
        """Record usage; returns the new counters, or None for unlimited tiers."""
        if tier is not Tier.FREE:
            return None
        op = Operation(operation)
        counters = self.load(tier)
        if op is Operation.PRE_PUSH:
            counters.pre_push_runs += amount
        elif op is Operation.DEPENDENCY_PR:
            counters.dependency_prs += amount
        elif repo_id and repo_id not in counters.repos:
            counters.repos.append(repo_id)
        self.save(tier, counters)
        return counters

    def summary(self, tier: Tier) -> UsageSummary:
        if tier is not Tier.FREE:
            return UsageSummary(tier=tier, unlimited=True)
        counters = self.load(tier)
        counts: dict[str, dict[str, Any]] = {}
        for op, limit in _free_caps().items():
            used = self._used(counters, op)
            counts[op.value] = {"used": used, "limit": limit, "remaining": max(0, limit - used)}
        return UsageSummary(tier=tier, unlimited=False, month=counters.month, counts=counts)
