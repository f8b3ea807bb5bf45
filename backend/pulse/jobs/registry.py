from __future__ import annotations

from typing import Any, Awaitable, Callable

from pulse.domain.errors import TerminalJobError
from pulse.domain.queue import lanes
from pulse.jobs import (
    alerts,
    anomalies,
    connector_sync,
    maintenance,
    notifications,
    realtime,
    scoring,
    signal_processing,
    webhooks,
    workflows,
)
from pulse.jobs.context import JobContext

JobHandler = Callable[[JobContext], Awaitable[dict[str, Any] | None]]

HANDLERS: dict[str, JobHandler] = {
    lanes.SIGNAL_PROCESSING: signal_processing.run,
    lanes.SCORE_COMPUTATION: scoring.run,
    lanes.WEBHOOK_DELIVERY: webhooks.run,
    lanes.ANOMALY_DETECTION: anomalies.run,
    lanes.ALERT_EVALUATION: alerts.run_evaluation,
    lanes.ALERT_CHECK: alerts.run_check,
    lanes.WORKFLOW_EXECUTION: workflows.run,
    lanes.REALTIME: realtime.run,
    lanes.NOTIFICATIONS: notifications.run,
    lanes.CONNECTOR_SYNC: connector_sync.run,
    lanes.MAINTENANCE: maintenance.run,
}


def get_handler(lane: str) -> JobHandler:
    try:
        return HANDLERS[lane]
    except KeyError as exc:
        raise TerminalJobError(f"unknown_lane:{lane}") from exc
