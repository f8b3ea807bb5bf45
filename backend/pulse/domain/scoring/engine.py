"""Decay-weighted account engagement scoring.

Everything here is pure: callers load the signal window and account facts,
the engine returns the score, tier, trend and factor breakdown.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Mapping, Sequence

from pulse.settings import settings
from pulse.shared.clock import days_between
from pulse.shared.numbers import round_half_up

TIER_HOT = "HOT"
TIER_WARM = "WARM"
TIER_COLD = "COLD"
TIER_INACTIVE = "INACTIVE"
TIERS = (TIER_HOT, TIER_WARM, TIER_COLD, TIER_INACTIVE)

TREND_RISING = "RISING"
TREND_STABLE = "STABLE"
TREND_FALLING = "FALLING"

DEFAULT_TIER_THRESHOLDS: dict[str, int] = {TIER_HOT: 80, TIER_WARM: 50, TIER_COLD: 20}

SIGNAL_HALF_LIFE_DAYS: dict[str, float] = {
    "page_view": 3.0,
    "docs_view": 7.0,
    "api_call": 7.0,
    "feature_used": 7.0,
    "login": 5.0,
    "signup": 30.0,
    "trial_started": 30.0,
    "repo_star": 30.0,
    "repo_fork": 30.0,
    "package_install": 10.0,
    "npm_downloads": 14.0,
    "pypi_downloads": 14.0,
    "discord_message": 10.0,
    "stackoverflow_question": 21.0,
    "support_ticket": 21.0,
}

SENIOR_TITLE_KEYWORDS = ("vp", "director", "head", "cto", "ceo", "founder", "chief", "president")

COMPANY_SIZE_FIT: dict[str, int] = {
    "STARTUP": 8,
    "SMALL": 10,
    "MEDIUM": 8,
    "LARGE": 6,
    "ENTERPRISE": 4,
}
DEFAULT_FIRMOGRAPHIC_FIT = 5

VELOCITY_WINDOW_DAYS = 7

_RECENCY_STEPS = ((1, 15), (3, 12), (7, 8), (14, 4))
_FRESHNESS_STEPS = ((0.8, 10), (0.6, 8), (0.4, 6), (0.2, 3))


@dataclass(frozen=True)
class SignalPoint:
    type: str
    timestamp: datetime
    actor_id: str | None = None


@dataclass(frozen=True)
class ScoreFactor:
    name: str
    weight: float
    value: int
    description: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ScoreInputs:
    signals: Sequence[SignalPoint]
    last_signal_at: datetime | None = None
    company_size: str | None = None
    contact_titles: Sequence[str | None] = field(default_factory=tuple)
    previous_score: int | None = None


@dataclass(frozen=True)
class ScoreResult:
    score: int
    tier: str
    trend: str
    factors: list[ScoreFactor]
    signal_count: int
    user_count: int
    last_signal_at: datetime | None


def half_life_for(signal_type: str, overrides: Mapping[str, float] | None = None) -> float:
    if overrides and signal_type in overrides:
        return float(overrides[signal_type])
    return SIGNAL_HALF_LIFE_DAYS.get(signal_type, settings.score_default_half_life_days)


def decay_weight(signal_type: str, age_days: float, overrides: Mapping[str, float] | None = None) -> float:
    """Weight in (0, 1] for a signal ``age_days`` old; halves every half-life."""
    half_life = half_life_for(signal_type, overrides)
    age = max(0.0, age_days)
    return math.exp(-math.log(2) / half_life * age)


def normalize_thresholds(raw: Mapping[str, object] | None) -> dict[str, int]:
    """Return usable thresholds, falling back to defaults when ``raw`` is not ordered HOT >= WARM >= COLD."""
    if not raw:
        return dict(DEFAULT_TIER_THRESHOLDS)
    try:
        hot = int(raw.get(TIER_HOT, DEFAULT_TIER_THRESHOLDS[TIER_HOT]))  # type: ignore[arg-type]
        warm = int(raw.get(TIER_WARM, DEFAULT_TIER_THRESHOLDS[TIER_WARM]))  # type: ignore[arg-type]
        cold = int(raw.get(TIER_COLD, DEFAULT_TIER_THRESHOLDS[TIER_COLD]))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return dict(DEFAULT_TIER_THRESHOLDS)
    if not (100 >= hot >= warm >= cold >= 0):
        return dict(DEFAULT_TIER_THRESHOLDS)
    return {TIER_HOT: hot, TIER_WARM: warm, TIER_COLD: cold}


def compute_tier(score: int, thresholds: Mapping[str, int] | None = None) -> str:
    limits = normalize_thresholds(thresholds)
    if score >= limits[TIER_HOT]:
        return TIER_HOT
    if score >= limits[TIER_WARM]:
        return TIER_WARM
    if score >= limits[TIER_COLD]:
        return TIER_COLD
    return TIER_INACTIVE


def compute_trend(current: int, previous: int | None, delta: int | None = None) -> str:
    if previous is None:
        return TREND_STABLE
    threshold = settings.score_trend_delta if delta is None else delta
    change = current - previous
    if change >= threshold:
        return TREND_RISING
    if change <= -threshold:
        return TREND_FALLING
    return TREND_STABLE


def _step(value: float, steps: Sequence[tuple[float, int]], *, descending: bool) -> int:
    for bound, points in steps:
        if (value >= bound) if descending else (value <= bound):
            return points
    return 0


def _count_senior(titles: Sequence[str | None]) -> int:
    count = 0
    for title in titles:
        lowered = (title or "").lower()
        if lowered and any(keyword in lowered for keyword in SENIOR_TITLE_KEYWORDS):
            count += 1
    return count


def compute_score(
    inputs: ScoreInputs,
    *,
    now: datetime,
    thresholds: Mapping[str, int] | None = None,
    half_life_overrides: Mapping[str, float] | None = None,
) -> ScoreResult:
    signals = list(inputs.signals)
    weights = [
        decay_weight(point.type, days_between(point.timestamp, now), half_life_overrides) for point in signals
    ]
    total_mass = sum(weights)
    velocity_cutoff = now - timedelta(days=VELOCITY_WINDOW_DAYS)
    recent_mass = sum(
        weight for point, weight in zip(signals, weights) if point.timestamp >= velocity_cutoff
    )
    actors = {point.actor_id for point in signals if point.actor_id}
    types = {point.type for point in signals}

    factors: list[ScoreFactor] = []

    user_count = len(actors)
    factors.append(
        ScoreFactor(
            name="user_count",
            weight=0.20,
            value=min(user_count * 4, 20),
            description=f"{user_count} distinct users active in the scoring window",
        )
    )

    velocity_ratio = recent_mass / total_mass if total_mass > 0 else 0.0
    factors.append(
        ScoreFactor(
            name="usage_velocity",
            weight=0.20,
            value=round_half_up(velocity_ratio * 20),
            description=f"{velocity_ratio:.0%} of weighted activity in the last {VELOCITY_WINDOW_DAYS} days",
        )
    )

    factors.append(
        ScoreFactor(
            name="feature_breadth",
            weight=0.15,
            value=min(len(types) * 3, 15),
            description=f"{len(types)} different signal types observed",
        )
    )

    last_signal_at = inputs.last_signal_at
    if last_signal_at is None and signals:
        last_signal_at = max(point.timestamp for point in signals)
    if last_signal_at is not None:
        days_since = days_between(last_signal_at, now)
        recency_value = _step(days_since, _RECENCY_STEPS, descending=False)
        recency_description = f"Last signal {round_half_up(days_since)} days ago"
    else:
        recency_value = 0
        recency_description = "No signals recorded"
    factors.append(
        ScoreFactor(name="engagement_recency", weight=0.15, value=recency_value, description=recency_description)
    )

    average_weight = total_mass / len(weights) if weights else 0.0
    factors.append(
        ScoreFactor(
            name="signal_freshness",
            weight=0.10,
            value=_step(average_weight, _FRESHNESS_STEPS, descending=True),
            description=f"Average signal weight {average_weight:.2f}",
        )
    )

    senior = _count_senior(inputs.contact_titles)
    factors.append(
        ScoreFactor(
            name="seniority_signals",
            weight=0.10,
            value=min(senior * 5, 10),
            description=f"{senior} contacts with senior titles",
        )
    )

    size = (inputs.company_size or "").upper() or None
    factors.append(
        ScoreFactor(
            name="firmographic_fit",
            weight=0.10,
            value=COMPANY_SIZE_FIT.get(size, DEFAULT_FIRMOGRAPHIC_FIT) if size else DEFAULT_FIRMOGRAPHIC_FIT,
            description=f"Company size: {size}" if size else "Company size unknown",
        )
    )

    score = max(0, min(round_half_up(sum(factor.value for factor in factors)), 100))
    return ScoreResult(
        score=score,
        tier=compute_tier(score, thresholds),
        trend=compute_trend(score, inputs.previous_score),
        factors=factors,
        signal_count=len(signals),
        user_count=user_count,
        last_signal_at=last_signal_at,
    )
