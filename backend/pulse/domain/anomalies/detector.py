"""Rolling-baseline anomaly detection on daily signal counts.

The baseline is the trailing window of whole days before today, zero-filled so
quiet days count. Today's count is compared using a population z-score.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Mapping, Sequence

from pulse.shared.numbers import round_half_up

SPIKE = "SPIKE"
DROP = "DROP"
SEVERITY_MODERATE = "moderate"
SEVERITY_HIGH = "high"

Z_THRESHOLD = 2.0
Z_HIGH = 3.0
MIN_MEAN = 1.0
DROP_MIN_MEAN = 3.0


@dataclass(frozen=True)
class BaselineStats:
    mean: float
    stddev: float
    days_with_data: int


@dataclass(frozen=True)
class AnomalyResult:
    account_id: uuid.UUID
    account_name: str
    anomaly_type: str
    severity: str
    today_count: int
    mean: float
    stddev: float
    expected_min: int
    expected_max: int
    z_score: float

    def metadata(self) -> dict:
        return {
            "anomalyType": self.anomaly_type,
            "severity": self.severity,
            "todayCount": self.today_count,
            "mean": self.mean,
            "stddev": self.stddev,
            "expectedMin": self.expected_min,
            "expectedMax": self.expected_max,
            "zScore": self.z_score,
            "accountName": self.account_name,
        }


def daily_series(counts_by_day: Mapping[date, int], today: date, baseline_days: int) -> list[int]:
    """Counts for the ``baseline_days`` days before ``today``, oldest first."""
    return [counts_by_day.get(today - timedelta(days=offset), 0) for offset in range(baseline_days, 0, -1)]


def compute_stats(series: Sequence[int]) -> BaselineStats:
    if not series:
        return BaselineStats(mean=0.0, stddev=0.0, days_with_data=0)
    mean = sum(series) / len(series)
    if len(series) < 2:
        stddev = 0.0
    else:
        stddev = math.sqrt(sum((value - mean) ** 2 for value in series) / len(series))
    return BaselineStats(mean=mean, stddev=stddev, days_with_data=sum(1 for value in series if value > 0))


def detect(
    account_id: uuid.UUID,
    account_name: str,
    today_count: int,
    series: Sequence[int],
    *,
    min_history_days: int,
) -> AnomalyResult | None:
    stats = compute_stats(series)
    if stats.days_with_data < min_history_days:
        return None
    if stats.mean < MIN_MEAN:
        return None
    if stats.stddev == 0:
        return None

    z_score = (today_count - stats.mean) / stats.stddev
    if z_score >= Z_THRESHOLD:
        anomaly_type = SPIKE
        severity = SEVERITY_HIGH if z_score >= Z_HIGH else SEVERITY_MODERATE
    elif z_score <= -Z_THRESHOLD and stats.mean > DROP_MIN_MEAN:
        anomaly_type = DROP
        severity = SEVERITY_HIGH if z_score <= -Z_HIGH else SEVERITY_MODERATE
    else:
        return None

    return AnomalyResult(
        account_id=account_id,
        account_name=account_name,
        anomaly_type=anomaly_type,
        severity=severity,
        today_count=today_count,
        mean=round_half_up(stats.mean, 2),
        stddev=round_half_up(stats.stddev, 2),
        expected_min=max(0, round_half_up(stats.mean - 2 * stats.stddev)),
        expected_max=round_half_up(stats.mean + 2 * stats.stddev),
        z_score=round_half_up(z_score, 2),
    )


def describe(result: AnomalyResult) -> tuple[str, str]:
    """Notification title and human-readable description."""
    label = "significant" if result.severity == SEVERITY_HIGH else "notable"
    expected = f"{result.expected_min}-{result.expected_max} (avg: {result.mean:g}/day)"
    if result.anomaly_type == SPIKE:
        title = f"Signal spike detected for {result.account_name}"
        description = (
            f"{result.account_name} has {result.today_count} signals today, which is a {label} "
            f"increase above the expected range of {expected}."
        )
    else:
        title = f"Signal drop detected for {result.account_name}"
        description = (
            f"{result.account_name} has only {result.today_count} signals today, which is a {label} "
            f"decrease below the expected range of {expected}."
        )
    return title, description
