"""License tiers and the features each tier unlocks."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import StrEnum
from typing import assert_never

from tessera.errors import InvalidTierError


class Tier(StrEnum):
    """Product tier. PRO is the paid tier."""

    FREE = "FREE"
    PRO = "PRO"


class Feature(StrEnum):
    """All gatable features across tiers."""

    FRAMEWORK_GROUPING = "framework_grouping"
    SMART_TEST_STRATEGY = "smart_test_strategy"
    TYPESCRIPT_PROTECTION = "typescript_protection"
    SECURITY_SCANNING = "security_scanning"
    PROJECT_TYPE_DETECTION = "project_type_detection"
    LIGHTHOUSE_CI = "lighthouse_ci"
    LIGHTHOUSE_THRESHOLDS = "lighthouse_thresholds"
    BUNDLE_SIZE_LIMITS = "bundle_size_limits"
    AXE_ACCESSIBILITY = "axe_accessibility"
    CONVENTIONAL_COMMITS = "conventional_commits"
    COVERAGE_THRESHOLDS = "coverage_thresholds"
    PRELAUNCH_VALIDATION = "prelaunch_validation"
    ENV_VALIDATION = "env_validation"
    CI_COST_ANALYSIS = "ci_cost_analysis"


@dataclass(frozen=True)
class TierFeatures:
    max_private_repos: float
    max_dependency_prs_per_month: float
    max_pre_push_runs_per_month: float
    dependency_monitoring: str
    languages: tuple[str, ...]
    enabled: frozenset[Feature]
    roadmap: tuple[str, ...]


_FREE_FEATURES = TierFeatures(
    max_private_repos=1,
    max_dependency_prs_per_month=10,
    max_pre_push_runs_per_month=50,
    dependency_monitoring="basic",
    languages=("npm",),
    enabled=frozenset({
        Feature.LIGHTHOUSE_CI,
        Feature.AXE_ACCESSIBILITY,
        Feature.CONVENTIONAL_COMMITS,
        Feature.PRELAUNCH_VALIDATION,
    }),
    roadmap=(
        "Linter and formatter configuration",
        "Basic pre-commit hooks",
        "Basic npm dependency monitoring (10 PRs/month)",
        "Lighthouse CI (no thresholds)",
        "Limited: 1 private repo, JS/TS only",
    ),
)

_PRO_FEATURES = TierFeatures(
    max_private_repos=math.inf,
    max_dependency_prs_per_month=math.inf,
    max_pre_push_runs_per_month=math.inf,
    dependency_monitoring="premium",
    languages=("npm", "python", "rust", "ruby"),
    enabled=frozenset(Feature),
    roadmap=(
        "Unlimited repos and runs",
        "Smart test strategy",
        "Security scanning",
        "Multi-language dependency monitoring",
        "Framework-aware dependency grouping",
        "Lighthouse thresholds, bundle size and coverage limits",
        "Email support",
    ),
)


def parse_tier(value: str | Tier) -> Tier:
    """Coerce *value* into a ``Tier`` or raise ``InvalidTierError``."""
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).strip().upper())
    except ValueError:
        valid = ", ".join(t.value for t in Tier)
        raise InvalidTierError(f"Invalid tier {value!r}. Must be one of: {valid}") from None


def features_for(tier: Tier) -> TierFeatures:
    match tier:
        case Tier.FREE:
            return _FREE_FEATURES
        case Tier.PRO:
            return _PRO_FEATURES
        case _:
            assert_never(tier)


def has_feature(tier: Tier, feature: Feature) -> bool:
    """Check if *feature* is enabled for *tier*."""
    return feature in features_for(tier).enabled
