from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.accounts.db_models import Company, Contact
from pulse.domain.errors import DomainError, NotFoundError
from pulse.domain.notifications.service import CHANNEL_IN_APP, CHANNEL_SLACK, enqueue_notification
from pulse.domain.orgs.service import get_slack_webhook_url, load_org_scoring_config
from pulse.domain.queue import lanes
from pulse.domain.queue.payloads import AlertEvaluationJobData, ScoreComputationJobData
from pulse.domain.queue.service import EnqueueResult, enqueue_job
from pulse.domain.queue.side_effects import run_side_effect
from pulse.domain.realtime.service import EVENT_SCORE_CHANGED, EVENT_TIER_CHANGED, enqueue_broadcast
from pulse.domain.scoring import engine
from pulse.domain.scoring.db_models import AccountScore, ScoreSnapshot
from pulse.domain.signals.db_models import Signal
from pulse.domain.webhooks.service import fire_event
from pulse.domain.workflows.service import enqueue_workflow_event
from pulse.infra.metrics import metrics
from pulse.infra.slack import build_hot_account_blocks, build_tier_change_blocks
from pulse.settings import settings
from pulse.shared.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoreComputation:
    record: AccountScore
    account_name: str
    previous_score: int | None
    previous_tier: str | None

    @property
    def score_changed(self) -> bool:
        return self.previous_score is None or self.previous_score != self.record.score

    @property
    def tier_changed(self) -> bool:
        return self.previous_tier is not None and self.previous_tier != self.record.tier


def score_group_key(org_id: uuid.UUID, account_id: uuid.UUID) -> str:
    return f"score:{org_id}:{account_id}"


def score_to_dict(record: AccountScore, company: Company | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "accountId": str(record.account_id),
        "score": record.score,
        "tier": record.tier,
        "trend": record.trend,
        "factors": record.factors_json or [],
        "signalCount": record.signal_count,
        "userCount": record.user_count,
        "lastSignalAt": ensure_utc(record.last_signal_at).isoformat() if record.last_signal_at else None,
        "computedAt": ensure_utc(record.computed_at).isoformat() if record.computed_at else None,
    }
    if company is not None:
        data["account"] = {
            "id": str(company.company_id),
            "name": company.name,
            "domain": company.domain,
            "size": company.size,
            "industry": company.industry,
        }
    return data


async def enqueue_score_computation(
    session: AsyncSession, org_id: uuid.UUID, account_id: uuid.UUID
) -> EnqueueResult:
    return await enqueue_job(
        session,
        lanes.SCORE_COMPUTATION,
        "compute-score",
        ScoreComputationJobData(organization_id=org_id, account_id=account_id),
        group_key=score_group_key(org_id, account_id),
    )


async def request_score_recompute(session: AsyncSession, org_id: uuid.UUID, account_id: uuid.UUID) -> EnqueueResult:
    company = await session.scalar(
        select(Company).where(Company.company_id == account_id, Company.org_id == org_id)
    )
    if company is None:
        raise NotFoundError(detail="Account not found")
    return await enqueue_score_computation(session, org_id, account_id)


async def _load_inputs(
    session: AsyncSession, org_id: uuid.UUID, account_id: uuid.UUID, now: datetime
) -> tuple[engine.ScoreInputs, Company | None]:
    window_start = now - timedelta(days=settings.score_window_days)
    rows = (
        await session.execute(
            select(Signal.type, Signal.timestamp, Signal.actor_id).where(
                Signal.org_id == org_id,
                Signal.account_id == account_id,
                Signal.timestamp >= window_start,
            )
        )
    ).all()
    signals = [
        engine.SignalPoint(
            type=signal_type,
            timestamp=ensure_utc(timestamp),
            actor_id=str(actor_id) if actor_id else None,
        )
        for signal_type, timestamp, actor_id in rows
    ]
    last_signal_at = await session.scalar(
        select(func.max(Signal.timestamp)).where(Signal.org_id == org_id, Signal.account_id == account_id)
    )
    company = await session.scalar(
        select(Company).where(Company.company_id == account_id, Company.org_id == org_id)
    )
    titles = (
        await session.scalars(
            select(Contact.title).where(Contact.org_id == org_id, Contact.company_id == account_id)
        )
    ).all()
    inputs = engine.ScoreInputs(
        signals=signals,
        last_signal_at=ensure_utc(last_signal_at),
        company_size=company.size if company else None,
        contact_titles=list(titles),
    )
    return inputs, company


async def compute_account_score(
    session: AsyncSession,
    org_id: uuid.UUID,
    account_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> ScoreComputation:
    """Recompute and upsert the score for one account, then enqueue its side effects.

    Each side effect is enqueued inside its own SAVEPOINT, so a failure is logged
    and counted without touching the score write.
    """
    current = ensure_utc(now or utcnow())
    config = await load_org_scoring_config(session, org_id)
    inputs, company = await _load_inputs(session, org_id, account_id, current)

    record = await session.get(AccountScore, account_id)
    if record is not None and record.org_id != org_id:
        raise DomainError(detail="Account belongs to another organization")
    previous_score = record.score if record is not None else None
    previous_tier = record.tier if record is not None else None
    inputs.previous_score = previous_score

    result = engine.compute_score(
        inputs,
        now=current,
        thresholds=config.tier_thresholds,
        half_life_overrides=config.half_life_overrides,
    )
    factors = [factor.to_dict() for factor in result.factors]
    if record is None:
        record = AccountScore(account_id=account_id, org_id=org_id)
        session.add(record)
    record.score = result.score
    record.tier = result.tier
    record.trend = result.trend
    record.factors_json = factors
    record.signal_count = result.signal_count
    record.user_count = result.user_count
    record.last_signal_at = result.last_signal_at
    record.computed_at = current
    session.add(
        ScoreSnapshot(
            snapshot_id=uuid.uuid4(),
            org_id=org_id,
            account_id=account_id,
            score=result.score,
            tier=result.tier,
            captured_at=current,
        )
    )
    await session.flush()
    metrics.record_score(result.tier)

    computation = ScoreComputation(
        record=record,
        account_name=company.name if company else "Unknown Account",
        previous_score=previous_score,
        previous_tier=previous_tier,
    )
    logger.info(
        "score_computed",
        extra={
            "extra": {
                "org_id": str(org_id),
                "account_id": str(account_id),
                "score": result.score,
                "tier": result.tier,
                "trend": result.trend,
            }
        },
    )
    await _enqueue_side_effects(session, org_id, computation, current)
    return computation


async def _enqueue_side_effects(
    session: AsyncSession, org_id: uuid.UUID, computation: ScoreComputation, now: datetime
) -> None:
    record = computation.record
    account_id = record.account_id
    context = {"org_id": str(org_id), "account_id": str(account_id)}
    change = {
        "accountId": str(account_id),
        "accountName": computation.account_name,
        "oldScore": computation.previous_score,
        "newScore": record.score,
        "oldTier": computation.previous_tier,
        "newTier": record.tier,
        "trend": record.trend,
    }

    if computation.score_changed:
        await run_side_effect(
            session, "score_changed_webhook", lambda: fire_event(session, org_id, "score.changed", change), context=context
        )
        await run_side_effect(
            session,
            "score_changed_broadcast",
            lambda: enqueue_broadcast(session, org_id, EVENT_SCORE_CHANGED, change),
            context=context,
        )

    if computation.tier_changed:
        await run_side_effect(
            session, "tier_changed_webhook", lambda: fire_event(session, org_id, "tier.changed", change), context=context
        )
        await run_side_effect(
            session,
            "tier_changed_broadcast",
            lambda: enqueue_broadcast(session, org_id, EVENT_TIER_CHANGED, change),
            context=context,
        )
        await run_side_effect(
            session,
            "tier_changed_notification",
            lambda: _enqueue_tier_notifications(session, org_id, computation, now),
            context=context,
        )
        await run_side_effect(
            session,
            "score_changed_workflow",
            lambda: enqueue_workflow_event(session, org_id, "score_changed", change),
            context=context,
        )

    await run_side_effect(
        session,
        "alert_evaluation",
        lambda: enqueue_job(
            session,
            lanes.ALERT_EVALUATION,
            "evaluate-alerts",
            AlertEvaluationJobData(
                organization_id=org_id,
                account_id=account_id,
                new_score=record.score,
                old_score=computation.previous_score,
            ),
        ),
        context=context,
    )


async def _enqueue_tier_notifications(
    session: AsyncSession, org_id: uuid.UUID, computation: ScoreComputation, now: datetime
) -> None:
    record = computation.record
    name = computation.account_name
    old_tier = computation.previous_tier or engine.TIER_INACTIVE
    entering_hot = record.tier == engine.TIER_HOT and old_tier != engine.TIER_HOT
    entity = {"entity_type": "company", "entity_id": str(record.account_id)}

    await enqueue_notification(
        session,
        org_id,
        channel=CHANNEL_IN_APP,
        type="tier_change",
        title=f"{name} moved from {old_tier} to {record.tier}",
        body=f"Score {record.score}/100 across {record.signal_count} signals",
        **entity,
    )
    if entering_hot:
        await enqueue_notification(
            session,
            org_id,
            channel=CHANNEL_IN_APP,
            type="account_hot",
            title=f"New HOT account: {name}",
            body=f"{name} reached HOT with a score of {record.score}/100",
            **entity,
        )

    if not await get_slack_webhook_url(session, org_id):
        return
    text, blocks = build_tier_change_blocks(
        name,
        old_tier,
        record.tier,
        score=record.score,
        signal_count=record.signal_count,
        user_count=record.user_count,
        date_label=now.date().isoformat(),
    )
    await enqueue_notification(
        session, org_id, channel=CHANNEL_SLACK, type="tier_change", title=text, blocks=blocks, **entity
    )
    if entering_hot:
        text, blocks = build_hot_account_blocks(name, score=record.score, signal_count=record.signal_count)
        await enqueue_notification(
            session, org_id, channel=CHANNEL_SLACK, type="account_hot", title=text, blocks=blocks, **entity
        )


async def get_account_score(session: AsyncSession, org_id: uuid.UUID, account_id: uuid.UUID) -> dict[str, Any]:
    row = (
        await session.execute(
            select(AccountScore, Company)
            .join(Company, Company.company_id == AccountScore.account_id)
            .where(AccountScore.account_id == account_id, AccountScore.org_id == org_id)
        )
    ).first()
    if row is None:
        raise NotFoundError(detail="Account score not found")
    record, company = row
    return score_to_dict(record, company)


async def get_top_accounts(
    session: AsyncSession, org_id: uuid.UUID, *, limit: int = 20, tier: str | None = None
) -> list[dict[str, Any]]:
    if tier is not None and tier not in engine.TIERS:
        raise DomainError(detail=f"Unknown tier: {tier}")
    stmt = (
        select(AccountScore, Company)
        .join(Company, Company.company_id == AccountScore.account_id)
        .where(AccountScore.org_id == org_id)
    )
    if tier:
        stmt = stmt.where(AccountScore.tier == tier)
    rows = (await session.execute(stmt.order_by(AccountScore.score.desc()).limit(limit))).all()
    return [score_to_dict(record, company) for record, company in rows]
