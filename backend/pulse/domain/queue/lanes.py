from __future__ import annotations

from dataclasses import dataclass

from pulse.settings import settings

SIGNAL_PROCESSING = "signal-processing"
SCORE_COMPUTATION = "score-computation"
WEBHOOK_DELIVERY = "webhook-delivery"
ANOMALY_DETECTION = "anomaly-detection"
ALERT_EVALUATION = "alert-evaluation"
ALERT_CHECK = "alert-check"
WORKFLOW_EXECUTION = "workflow-execution"
REALTIME = "realtime"
NOTIFICATIONS = "notifications"
CONNECTOR_SYNC = "connector-sync"
MAINTENANCE = "maintenance"


@dataclass(frozen=True)
class LaneConfig:
    name: str
    concurrency: int
    max_attempts: int
    backoff_seconds: float


_LANE_TABLE: dict[str, tuple[int, int | None, float | None]] = {
    # lane: (concurrency, attempts, backoff); None falls back to settings
    SIGNAL_PROCESSING: (5, None, None),
    SCORE_COMPUTATION: (3, None, None),
    WEBHOOK_DELIVERY: (10, None, None),
    ANOMALY_DETECTION: (2, None, 2.0),
    ALERT_EVALUATION: (5, None, None),
    ALERT_CHECK: (1, None, 2.0),
    WORKFLOW_EXECUTION: (3, None, None),
    REALTIME: (10, None, None),
    NOTIFICATIONS: (5, None, 2.0),
    CONNECTOR_SYNC: (2, None, 2.0),
    MAINTENANCE: (1, 2, 2.0),
}

LANE_NAMES: tuple[str, ...] = tuple(_LANE_TABLE)


def get_lane(name: str) -> LaneConfig:
    try:
        concurrency, attempts, backoff = _LANE_TABLE[name]
    except KeyError as exc:
        raise ValueError(f"unknown_lane:{name}") from exc
    if name == WEBHOOK_DELIVERY:
        return LaneConfig(
            name=name,
            concurrency=concurrency,
            max_attempts=settings.webhook_max_attempts,
            backoff_seconds=settings.webhook_backoff_seconds,
        )
    return LaneConfig(
        name=name,
        concurrency=concurrency,
        max_attempts=attempts if attempts is not None else settings.job_default_max_attempts,
        backoff_seconds=backoff if backoff is not None else settings.job_default_backoff_seconds,
    )


def all_lanes() -> list[LaneConfig]:
    return [get_lane(name) for name in LANE_NAMES]
