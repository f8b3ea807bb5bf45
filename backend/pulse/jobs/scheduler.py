"""Repeatable schedules stored in ``job_schedules``.

Each due schedule enqueues one job keyed ``schedule:{name}:{slot}``; scheduled
fan-out payloads carry the slot as ``scheduledFor`` so the per-tenant job keys
derived from it are stable across overlapping scheduler processes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.connectors.registry import SYNC_SCHEDULES
from pulse.domain.queue import lanes
from pulse.domain.queue.cron import CronError, CronExpression
from pulse.domain.queue.db_models import JobSchedule
from pulse.domain.queue.payloads import ConnectorFanout, MaintenanceJobData, ScheduledFanout
from pulse.domain.queue.service import enqueue_job
from pulse.shared.clock import ensure_utc, floor_minute, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduleDefinition:
    name: str
    lane: str
    job_name: str
    cron: str
    payload: dict[str, Any] = field(default_factory=dict)


DEFAULT_SCHEDULES: tuple[ScheduleDefinition, ...] = (
    ScheduleDefinition("anomaly-scan", lanes.ANOMALY_DETECTION, "anomaly-scan", "0 * * * *", ScheduledFanout().to_json()),
    ScheduleDefinition("alert-check", lanes.ALERT_CHECK, "alert-check", "*/5 * * * *", ScheduledFanout().to_json()),
    *(
        ScheduleDefinition(
            f"{connector.value}-sync",
            lanes.CONNECTOR_SYNC,
            f"{connector.value}-sync",
            cron,
            ConnectorFanout(connector=connector.value).to_json(),
        )
        for connector, cron in SYNC_SCHEDULES.items()
    ),
    ScheduleDefinition("job-retention", lanes.MAINTENANCE, "job-retention", "30 3 * * *", MaintenanceJobData().to_json()),
)


async def ensure_schedules(
    session: AsyncSession,
    definitions: tuple[ScheduleDefinition, ...] = DEFAULT_SCHEDULES,
    *,
    now: datetime | None = None,
) -> int:
    """Upsert schedule rows; returns how many were created or changed."""
    current = now or utcnow()
    changed = 0
    for definition in definitions:
        cron = CronExpression.parse(definition.cron)
        row = await session.get(JobSchedule, definition.name)
        if row is None:
            session.add(
                JobSchedule(
                    name=definition.name,
                    lane=definition.lane,
                    job_name=definition.job_name,
                    cron=definition.cron,
                    payload=definition.payload,
                    enabled=True,
                    next_fire_at=cron.next_after(current),
                )
            )
            changed += 1
            continue
        if (row.cron, row.lane, row.job_name, row.payload) != (
            definition.cron,
            definition.lane,
            definition.job_name,
            definition.payload,
        ):
            row.lane = definition.lane
            row.job_name = definition.job_name
            row.payload = definition.payload
            if row.cron != definition.cron or row.next_fire_at is None:
                row.next_fire_at = cron.next_after(current)
            row.cron = definition.cron
            changed += 1
    await session.commit()
    return changed


def _scheduled_payload(payload: dict[str, Any], slot: datetime) -> dict[str, Any]:
    if payload.get("kind") == "scheduled-fanout":
        return {**payload, "scheduledFor": slot.isoformat()}
    return dict(payload)


async def fire_due_schedules(session: AsyncSession, *, now: datetime | None = None) -> list[str]:
    """Enqueue every enabled schedule whose ``next_fire_at`` has passed; returns the fired names."""
    current = ensure_utc(now or utcnow())
    due = (
        await session.scalars(
            select(JobSchedule)
            .where(JobSchedule.enabled.is_(True), JobSchedule.next_fire_at <= current)
            .order_by(JobSchedule.name)
        )
    ).all()
    fired: list[str] = []
    for schedule in due:
        try:
            cron = CronExpression.parse(schedule.cron)
        except CronError as exc:
            logger.warning("schedule_invalid_cron", extra={"extra": {"schedule": schedule.name, "reason": str(exc)}})
            schedule.enabled = False
            continue
        slot = floor_minute(schedule.next_fire_at)
        await enqueue_job(
            session,
            schedule.lane,
            schedule.job_name,
            _scheduled_payload(schedule.payload or {}, slot),
            job_key=f"schedule:{schedule.name}:{slot:%Y%m%d%H%M}",
            now=current,
        )
        schedule.last_fired_at = current
        schedule.next_fire_at = cron.next_after(current)
        fired.append(schedule.name)
    await session.commit()
    if fired:
        logger.info("schedules_fired", extra={"extra": {"schedules": fired}})
    return fired
