from datetime import datetime, timedelta, timezone

import pytest

from pulse.domain.scoring import engine
from pulse.domain.scoring.engine import ScoreInputs, SignalPoint

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

FACTOR_MAXIMA = {
    "user_count": 20,
    "usage_velocity": 20,
    "feature_breadth": 15,
    "engagement_recency": 15,
    "signal_freshness": 10,
    "seniority_signals": 10,
    "firmographic_fit": 10,
}


def _points(count: int, *, types=("page_view", "docs_view", "api_call"), age_days: float = 0.5, actors: int = 3):
    return [
        SignalPoint(
            type=types[index % len(types)],
            timestamp=NOW - timedelta(days=age_days),
            actor_id=f"actor-{index % actors}",
        )
        for index in range(count)
    ]


@pytest.mark.parametrize("signal_type", ["page_view", "signup", "custom_event"])
def test_decay_weight_in_unit_interval_and_strictly_decreasing(signal_type):
    ages = [0, 0.5, 1, 3, 7, 30, 90]
    weights = [engine.decay_weight(signal_type, age) for age in ages]
    assert weights[0] == 1.0
    assert all(0 < weight <= 1 for weight in weights)
    assert all(later < earlier for earlier, later in zip(weights, weights[1:]))


def test_decay_weight_halves_at_half_life():
    assert engine.decay_weight("page_view", 3) == pytest.approx(0.5)
    assert engine.decay_weight("signup", 30) == pytest.approx(0.5)
    assert engine.decay_weight("page_view", 6) == pytest.approx(0.25)


def test_unknown_type_uses_default_half_life_and_overrides_win():
    default = engine.half_life_for("custom_event")
    assert engine.decay_weight("custom_event", default) == pytest.approx(0.5)
    assert engine.decay_weight("page_view", 10, {"page_view": 10}) == pytest.approx(0.5)


def test_future_timestamp_counts_as_fresh():
    assert engine.decay_weight("page_view", -2) == 1.0


@pytest.mark.parametrize(
    "score,tier",
    [(100, "HOT"), (80, "HOT"), (79, "WARM"), (50, "WARM"), (49, "COLD"), (20, "COLD"), (19, "INACTIVE"), (0, "INACTIVE")],
)
def test_default_tier_boundaries(score, tier):
    assert engine.compute_tier(score) == tier


def test_tier_is_monotonic_in_score():
    order = {tier: rank for rank, tier in enumerate(reversed(engine.TIERS))}
    ranks = [order[engine.compute_tier(score)] for score in range(0, 101)]
    assert ranks == sorted(ranks)


def test_custom_thresholds_and_invalid_fallback():
    custom = {"HOT": 60, "WARM": 30, "COLD": 10}
    assert engine.compute_tier(60, custom) == "HOT"
    assert engine.compute_tier(29, custom) == "COLD"
    assert engine.normalize_thresholds({"HOT": 10, "WARM": 50, "COLD": 20}) == engine.DEFAULT_TIER_THRESHOLDS
    assert engine.normalize_thresholds({"HOT": "abc"}) == engine.DEFAULT_TIER_THRESHOLDS
    assert engine.normalize_thresholds(None) == engine.DEFAULT_TIER_THRESHOLDS


def test_trend_uses_delta():
    assert engine.compute_trend(60, None) == "STABLE"
    assert engine.compute_trend(60, 55, delta=5) == "RISING"
    assert engine.compute_trend(50, 55, delta=5) == "FALLING"
    assert engine.compute_trend(57, 55, delta=5) == "STABLE"


def test_empty_inputs_score_only_firmographic_default():
    result = engine.compute_score(ScoreInputs(signals=[]), now=NOW)
    values = {factor.name: factor.value for factor in result.factors}
    assert values["firmographic_fit"] == engine.DEFAULT_FIRMOGRAPHIC_FIT
    assert result.score == engine.DEFAULT_FIRMOGRAPHIC_FIT
    assert result.tier == "INACTIVE"
    assert result.signal_count == 0
    assert result.user_count == 0
    assert result.last_signal_at is None


@pytest.mark.parametrize(
    "inputs",
    [
        ScoreInputs(signals=[]),
        ScoreInputs(signals=_points(3), company_size="SMALL"),
        ScoreInputs(signals=_points(200, actors=25), company_size="ENTERPRISE", contact_titles=["CTO", "VP Eng"]),
        ScoreInputs(signals=_points(40, age_days=60), company_size="unknown-size", contact_titles=[None, ""]),
    ],
)
def test_score_is_bounded_and_equals_factor_sum(inputs):
    result = engine.compute_score(inputs, now=NOW)
    assert 0 <= result.score <= 100
    assert result.score == sum(factor.value for factor in result.factors)
    for factor in result.factors:
        assert 0 <= factor.value <= FACTOR_MAXIMA[factor.name]
    assert sum(FACTOR_MAXIMA.values()) == 100


def test_busy_recent_account_is_hot():
    inputs = ScoreInputs(
        signals=_points(60, types=("page_view", "docs_view", "api_call", "login", "feature_used"), actors=6),
        company_size="SMALL",
        contact_titles=["Head of Platform", "CTO"],
        previous_score=40,
    )
    result = engine.compute_score(inputs, now=NOW)
    values = {factor.name: factor.value for factor in result.factors}
    assert values["user_count"] == 20
    assert values["usage_velocity"] == 20
    assert values["feature_breadth"] == 15
    assert values["engagement_recency"] == 15
    assert values["seniority_signals"] == 10
    assert values["firmographic_fit"] == 10
    assert result.tier == "HOT"
    assert result.trend == "RISING"
    assert result.user_count == 6
    assert result.signal_count == 60


def test_older_activity_scores_lower():
    fresh = engine.compute_score(ScoreInputs(signals=_points(10, age_days=0.5)), now=NOW)
    stale = engine.compute_score(ScoreInputs(signals=_points(10, age_days=20)), now=NOW)
    assert stale.score < fresh.score
