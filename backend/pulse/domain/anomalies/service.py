from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.accounts.db_models import Company
from pulse.domain.anomalies import detector
from pulse.domain.anomalies.db_models import AnomalyAlertLedger
from pulse.domain.notifications.db_models import Notification
from pulse.domain.notifications.service import create_notification
from pulse.domain.orgs.db_models import Organization
from pulse.domain.queue.side_effects import run_side_effect
from pulse.domain.signals.db_models import Signal
from pulse.domain.webhooks.service import fire_event
from pulse.infra.metrics import metrics
from pulse.settings import settings
from pulse.shared.clock import ensure_utc, start_of_day, utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_TYPE = "signal_anomaly"
ANOMALY_WEBHOOK_EVENT = "signal.anomaly"


async def _daily_counts(
    session: AsyncSession, org_id: uuid.UUID, account_id: uuid.UUID, since: datetime
) -> Counter[date]:
    timestamps = await session.scalars(
        select(Signal.timestamp).where(
            Signal.org_id == org_id,
            Signal.account_id == account_id,
            Signal.timestamp >= since,
        )
    )
    return Counter(ensure_utc(timestamp).date() for timestamp in timestamps)


async def detect_account_anomaly(
    session: AsyncSession,
    org_id: uuid.UUID,
    account_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> detector.AnomalyResult | None:
    current = ensure_utc(now or utcnow())
    today_start = start_of_day(current)
    baseline_days = settings.anomaly_baseline_days
    counts = await _daily_counts(session, org_id, account_id, today_start - timedelta(days=baseline_days))
    today = today_start.date()
    series = detector.daily_series(counts, today, baseline_days)
    account_name = await session.scalar(
        select(Company.name).where(Company.company_id == account_id, Company.org_id == org_id)
    )
    return detector.detect(
        account_id,
        account_name or "Unknown Account",
        counts.get(today, 0),
        series,
        min_history_days=settings.anomaly_min_history_days,
    )


async def scan_organization_anomalies(
    session: AsyncSession, org_id: uuid.UUID, *, now: datetime | None = None
) -> list[detector.AnomalyResult]:
    """Run the detector for every account with at least one signal today."""
    current = ensure_utc(now or utcnow())
    account_ids = (
        await session.scalars(
            select(Signal.account_id)
            .where(
                Signal.org_id == org_id,
                Signal.account_id.is_not(None),
                Signal.timestamp >= start_of_day(current),
            )
            .distinct()
        )
    ).all()
    results: list[detector.AnomalyResult] = []
    for account_id in account_ids:
        try:
            result = await detect_account_anomaly(session, org_id, account_id, now=current)
        except Exception as exc:  # noqa: BLE001
            metrics.record_batch_item_error("anomaly_scan")
            logger.warning(
                "anomaly_account_failed",
                extra={"extra": {"org_id": str(org_id), "account_id": str(account_id), "reason": type(exc).__name__}},
            )
            continue
        if result is not None:
            results.append(result)
    return results


async def has_recent_anomaly(
    session: AsyncSession,
    org_id: uuid.UUID,
    account_id: uuid.UUID,
    anomaly_type: str,
    *,
    now: datetime,
) -> bool:
    since = now - timedelta(hours=settings.anomaly_cooldown_hours)
    existing = await session.scalar(
        select(AnomalyAlertLedger.ledger_id)
        .where(
            AnomalyAlertLedger.org_id == org_id,
            AnomalyAlertLedger.account_id == account_id,
            AnomalyAlertLedger.anomaly_type == anomaly_type,
            AnomalyAlertLedger.created_at >= since,
        )
        .limit(1)
    )
    return existing is not None


async def record_anomaly_notification(
    session: AsyncSession,
    org_id: uuid.UUID,
    anomaly: detector.AnomalyResult,
    *,
    now: datetime | None = None,
) -> Notification | None:
    """Create the notification for ``anomaly`` unless one was emitted inside the cooldown window.

    The ledger's unique ``(org, account, type, window_start)`` key makes a racing
    duplicate fail the insert; that duplicate is treated as suppressed.
    """
    current = ensure_utc(now or utcnow())
    if await has_recent_anomaly(session, org_id, anomaly.account_id, anomaly.anomaly_type, now=current):
        metrics.record_notification_suppressed("cooldown")
        logger.debug(
            "anomaly_notification_suppressed",
            extra={"extra": {"org_id": str(org_id), "account_id": str(anomaly.account_id), "reason": "cooldown"}},
        )
        return None

    title, description = detector.describe(anomaly)
    body = json.dumps({**anomaly.metadata(), "description": description})
    savepoint = await session.begin_nested()
    try:
        ledger = AnomalyAlertLedger(
            ledger_id=uuid.uuid4(),
            org_id=org_id,
            account_id=anomaly.account_id,
            anomaly_type=anomaly.anomaly_type,
            window_start=start_of_day(current),
            created_at=current,
        )
        session.add(ledger)
        await session.flush()
        notification = await create_notification(
            session,
            org_id=org_id,
            type=NOTIFICATION_TYPE,
            title=title,
            body=body,
            entity_type="company",
            entity_id=str(anomaly.account_id),
        )
        ledger.notification_id = notification.notification_id
        await session.flush()
    except IntegrityError:
        await savepoint.rollback()
        metrics.record_notification_suppressed("ledger_conflict")
        return None
    await savepoint.commit()

    metrics.record_anomaly(anomaly.anomaly_type, anomaly.severity)
    await run_side_effect(
        session,
        "anomaly_webhook",
        lambda: fire_event(
            session,
            org_id,
            ANOMALY_WEBHOOK_EVENT,
            {"accountId": str(anomaly.account_id), **anomaly.metadata(), "description": description},
        ),
        context={"org_id": str(org_id)},
    )
    logger.info(
        "anomaly_notification_created",
        extra={
            "extra": {
                "org_id": str(org_id),
                "account_id": str(anomaly.account_id),
                "anomaly_type": anomaly.anomaly_type,
                "severity": anomaly.severity,
                "z_score": anomaly.z_score,
            }
        },
    )
    return notification


async def process_anomaly_detection(
    session: AsyncSession, org_id: uuid.UUID, *, now: datetime | None = None
) -> dict[str, int]:
    current = ensure_utc(now or utcnow())
    anomalies = await scan_organization_anomalies(session, org_id, now=current)
    created = 0
    for anomaly in anomalies:
        if await record_anomaly_notification(session, org_id, anomaly, now=current) is not None:
            created += 1
    return {"anomalies_detected": len(anomalies), "notifications_created": created}


def _parse_body(body: str | None) -> dict[str, Any]:
    if not body:
        return {}
    try:
        parsed = json.loads(body)
    except ValueError:
        return {"description": body}
    return parsed if isinstance(parsed, dict) else {"description": body}


async def get_recent_anomalies(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    account_id: uuid.UUID | None = None,
    days: int = 7,
    limit: int = 100,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    since = ensure_utc(now or utcnow()) - timedelta(days=days)
    stmt = select(Notification).where(
        Notification.org_id == org_id,
        Notification.type == NOTIFICATION_TYPE,
        Notification.created_at >= since,
    )
    if account_id is not None:
        stmt = stmt.where(Notification.entity_id == str(account_id))
    rows = (await session.scalars(stmt.order_by(Notification.created_at.desc()).limit(limit))).all()
    return [
        {
            "id": str(row.notification_id),
            "accountId": row.entity_id,
            "title": row.title,
            "createdAt": ensure_utc(row.created_at).isoformat() if row.created_at else None,
            **_parse_body(row.body),
        }
        for row in rows
    ]


async def eligible_anomaly_orgs(session: AsyncSession) -> list[uuid.UUID]:
    result = await session.scalars(select(Organization.org_id).where(Organization.is_demo.is_(False)))
    return list(result.all())
