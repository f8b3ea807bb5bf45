"""Account alert rules.

Score-based rules run after every score recomputation; time-based rules
(``engagement_drop``, ``account_inactive``) run from the periodic alert check.
A rule that fired stays quiet for ``alert_cooldown_minutes``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.accounts.db_models import Company
from pulse.domain.alerts.db_models import AccountAlertRule
from pulse.domain.errors import DomainError, NotFoundError
from pulse.domain.notifications.service import CHANNEL_SLACK, create_notification, enqueue_notification
from pulse.domain.scoring.db_models import AccountScore, ScoreSnapshot
from pulse.domain.signals.db_models import Signal
from pulse.infra.slack import build_alert_blocks
from pulse.settings import settings
from pulse.shared.clock import days_between, ensure_utc, utcnow
from pulse.shared.numbers import round_half_up

logger = logging.getLogger(__name__)

TRIGGER_SCORE_DROP = "score_drop"
TRIGGER_SCORE_RISE = "score_rise"
TRIGGER_SCORE_THRESHOLD = "score_threshold"
TRIGGER_ENGAGEMENT_DROP = "engagement_drop"
TRIGGER_NEW_HOT_SIGNAL = "new_hot_signal"
TRIGGER_ACCOUNT_INACTIVE = "account_inactive"
TRIGGER_TYPES = (
    TRIGGER_SCORE_DROP,
    TRIGGER_SCORE_RISE,
    TRIGGER_SCORE_THRESHOLD,
    TRIGGER_ENGAGEMENT_DROP,
    TRIGGER_NEW_HOT_SIGNAL,
    TRIGGER_ACCOUNT_INACTIVE,
)
TIME_BASED_TRIGGERS = (TRIGGER_ENGAGEMENT_DROP, TRIGGER_ACCOUNT_INACTIVE)

NEW_SIGNAL_WINDOW = timedelta(minutes=10)


@dataclass(frozen=True)
class EvaluationContext:
    org_id: uuid.UUID
    account_id: uuid.UUID
    new_score: int
    old_score: int | None
    now: datetime


@dataclass(frozen=True)
class RuleOutcome:
    triggered: bool
    reason: str | None = None


_NOT_TRIGGERED = RuleOutcome(triggered=False)


def rule_to_dict(rule: AccountAlertRule) -> dict[str, Any]:
    return {
        "id": str(rule.rule_id),
        "name": rule.name,
        "description": rule.description,
        "triggerType": rule.trigger_type,
        "conditions": rule.conditions or {},
        "channels": rule.channels or {},
        "enabled": rule.enabled,
        "lastTriggeredAt": ensure_utc(rule.last_triggered_at).isoformat() if rule.last_triggered_at else None,
    }


async def create_rule(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    name: str,
    trigger_type: str,
    conditions: dict[str, Any] | None = None,
    channels: dict[str, Any] | None = None,
    description: str | None = None,
    enabled: bool = True,
) -> AccountAlertRule:
    if trigger_type not in TRIGGER_TYPES:
        raise DomainError(detail=f"Unsupported trigger type: {trigger_type}")
    rule = AccountAlertRule(
        rule_id=uuid.uuid4(),
        org_id=org_id,
        name=name,
        description=description,
        trigger_type=trigger_type,
        conditions=conditions or {},
        channels=channels or {"inApp": True},
        enabled=enabled,
    )
    session.add(rule)
    await session.flush()
    return rule


async def list_rules(session: AsyncSession, org_id: uuid.UUID) -> list[AccountAlertRule]:
    result = await session.scalars(
        select(AccountAlertRule)
        .where(AccountAlertRule.org_id == org_id)
        .order_by(AccountAlertRule.created_at.desc())
    )
    return list(result.all())


async def delete_rule(session: AsyncSession, org_id: uuid.UUID, rule_id: uuid.UUID) -> None:
    rule = await session.scalar(
        select(AccountAlertRule).where(AccountAlertRule.rule_id == rule_id, AccountAlertRule.org_id == org_id)
    )
    if rule is None:
        raise NotFoundError(detail="Alert rule not found")
    await session.delete(rule)
    await session.flush()


async def _oldest_snapshot_score(session: AsyncSession, ctx: EvaluationContext, within_days: float) -> int | None:
    since = ctx.now - timedelta(days=within_days)
    return await session.scalar(
        select(ScoreSnapshot.score)
        .where(
            ScoreSnapshot.org_id == ctx.org_id,
            ScoreSnapshot.account_id == ctx.account_id,
            ScoreSnapshot.captured_at >= since,
        )
        .order_by(ScoreSnapshot.captured_at.asc())
        .limit(1)
    )


async def _evaluate_score_drop(session: AsyncSession, conditions: dict, ctx: EvaluationContext) -> RuleOutcome:
    drop_percent = float(conditions.get("dropPercent", 10))
    within_days = float(conditions.get("withinDays", 7))
    base = await _oldest_snapshot_score(session, ctx, within_days)
    if base is None:
        if ctx.old_score:
            actual = (ctx.old_score - ctx.new_score) / ctx.old_score * 100
            if actual >= drop_percent:
                return RuleOutcome(
                    True, f"Score dropped {round_half_up(actual)}% (from {ctx.old_score} to {ctx.new_score})"
                )
        return _NOT_TRIGGERED
    if base <= 0:
        return _NOT_TRIGGERED
    actual = (base - ctx.new_score) / base * 100
    if actual >= drop_percent:
        return RuleOutcome(
            True,
            f"Score dropped {round_half_up(actual)}% (from {base} to {ctx.new_score}) over the last {within_days:g} days",
        )
    return _NOT_TRIGGERED


async def _evaluate_score_rise(session: AsyncSession, conditions: dict, ctx: EvaluationContext) -> RuleOutcome:
    rise_percent = float(conditions.get("risePercent", 10))
    within_days = float(conditions.get("withinDays", 7))
    base = await _oldest_snapshot_score(session, ctx, within_days)
    if base is None:
        if ctx.old_score:
            actual = (ctx.new_score - ctx.old_score) / ctx.old_score * 100
            if actual >= rise_percent:
                return RuleOutcome(True, f"Score rose {round_half_up(actual)}% (from {ctx.old_score} to {ctx.new_score})")
        return _NOT_TRIGGERED
    if base <= 0:
        return _NOT_TRIGGERED
    actual = (ctx.new_score - base) / base * 100
    if actual >= rise_percent:
        return RuleOutcome(
            True,
            f"Score rose {round_half_up(actual)}% (from {base} to {ctx.new_score}) over the last {within_days:g} days",
        )
    return _NOT_TRIGGERED


def evaluate_score_threshold(conditions: dict, ctx: EvaluationContext) -> RuleOutcome:
    threshold = int(conditions.get("threshold", 70))
    direction = conditions.get("direction", "above")
    if ctx.old_score is None:
        if direction == "above" and ctx.new_score >= threshold:
            return RuleOutcome(True, f"Score ({ctx.new_score}) is above threshold ({threshold})")
        if direction == "below" and ctx.new_score <= threshold:
            return RuleOutcome(True, f"Score ({ctx.new_score}) is below threshold ({threshold})")
        return _NOT_TRIGGERED
    if direction == "above":
        if ctx.old_score < threshold <= ctx.new_score:
            return RuleOutcome(
                True, f"Score crossed above threshold {threshold} (was {ctx.old_score}, now {ctx.new_score})"
            )
    elif ctx.old_score > threshold >= ctx.new_score:
        return RuleOutcome(
            True, f"Score crossed below threshold {threshold} (was {ctx.old_score}, now {ctx.new_score})"
        )
    return _NOT_TRIGGERED


def _account_signals(ctx: EvaluationContext):
    return select(func.count()).select_from(Signal).where(
        Signal.org_id == ctx.org_id, Signal.account_id == ctx.account_id
    )


async def _evaluate_engagement_drop(session: AsyncSession, conditions: dict, ctx: EvaluationContext) -> RuleOutcome:
    inactive_days = float(conditions.get("inactiveDays", 7))
    since = ctx.now - timedelta(days=inactive_days)
    recent = await session.scalar(_account_signals(ctx).where(Signal.timestamp >= since))
    if recent:
        return _NOT_TRIGGERED
    total = await session.scalar(_account_signals(ctx))
    if not total:
        return _NOT_TRIGGERED
    return RuleOutcome(
        True,
        f"No signals received in the last {inactive_days:g} days (account had {total} total signals)",
    )


async def _evaluate_new_hot_signal(session: AsyncSession, conditions: dict, ctx: EvaluationContext) -> RuleOutcome:
    source_types = [str(value) for value in conditions.get("sourceTypes") or []]
    if not source_types:
        return _NOT_TRIGGERED
    signal_type = await session.scalar(
        select(Signal.type)
        .where(
            Signal.org_id == ctx.org_id,
            Signal.account_id == ctx.account_id,
            Signal.type.in_(source_types),
            Signal.timestamp >= ctx.now - NEW_SIGNAL_WINDOW,
        )
        .order_by(Signal.timestamp.desc())
        .limit(1)
    )
    if signal_type is None:
        return _NOT_TRIGGERED
    return RuleOutcome(True, f'New signal of type "{signal_type}" detected')


async def _evaluate_account_inactive(session: AsyncSession, conditions: dict, ctx: EvaluationContext) -> RuleOutcome:
    inactive_days = float(conditions.get("inactiveDays", 14))
    last_signal_at = await session.scalar(
        select(func.max(Signal.timestamp)).where(Signal.org_id == ctx.org_id, Signal.account_id == ctx.account_id)
    )
    if last_signal_at is None:
        return _NOT_TRIGGERED
    idle_days = days_between(last_signal_at, ctx.now)
    if idle_days >= inactive_days:
        return RuleOutcome(
            True,
            f"Account has been inactive for {round_half_up(idle_days)} days (threshold: {inactive_days:g} days)",
        )
    return _NOT_TRIGGERED


async def evaluate_rule(session: AsyncSession, rule: AccountAlertRule, ctx: EvaluationContext) -> RuleOutcome:
    conditions = rule.conditions or {}
    if rule.trigger_type == TRIGGER_SCORE_DROP:
        return await _evaluate_score_drop(session, conditions, ctx)
    if rule.trigger_type == TRIGGER_SCORE_RISE:
        return await _evaluate_score_rise(session, conditions, ctx)
    if rule.trigger_type == TRIGGER_SCORE_THRESHOLD:
        return evaluate_score_threshold(conditions, ctx)
    if rule.trigger_type == TRIGGER_ENGAGEMENT_DROP:
        return await _evaluate_engagement_drop(session, conditions, ctx)
    if rule.trigger_type == TRIGGER_NEW_HOT_SIGNAL:
        return await _evaluate_new_hot_signal(session, conditions, ctx)
    if rule.trigger_type == TRIGGER_ACCOUNT_INACTIVE:
        return await _evaluate_account_inactive(session, conditions, ctx)
    logger.warning("alert_rule_unknown_trigger", extra={"extra": {"rule_id": str(rule.rule_id)}})
    return _NOT_TRIGGERED


def in_cooldown(last_triggered_at: datetime | None, now: datetime) -> bool:
    if last_triggered_at is None:
        return False
    return now - ensure_utc(last_triggered_at) < timedelta(minutes=settings.alert_cooldown_minutes)


async def dispatch_alert(session: AsyncSession, rule: AccountAlertRule, ctx: EvaluationContext, reason: str) -> None:
    channels = rule.channels or {}
    account_name = await session.scalar(
        select(Company.name).where(Company.company_id == ctx.account_id, Company.org_id == ctx.org_id)
    )
    account_name = account_name or "Unknown Account"
    title = f"Alert: {rule.name}"
    body = f"{account_name} - {reason}"
    if channels.get("inApp", True) is not False:
        await create_notification(
            session,
            org_id=ctx.org_id,
            type="account_alert",
            title=title,
            body=body,
            entity_type="company",
            entity_id=str(ctx.account_id),
        )
    if channels.get("slack"):
        text, blocks = build_alert_blocks(rule.name, account_name, reason)
        await enqueue_notification(
            session,
            ctx.org_id,
            channel=CHANNEL_SLACK,
            type="account_alert",
            title=text,
            body=body,
            entity_type="company",
            entity_id=str(ctx.account_id),
            blocks=blocks,
        )


def _cooldown_snapshot(rules: list[AccountAlertRule]) -> dict[uuid.UUID, datetime | None]:
    return {rule.rule_id: rule.last_triggered_at for rule in rules}


async def _apply_rules(
    session: AsyncSession,
    rules: list[AccountAlertRule],
    ctx: EvaluationContext,
    last_triggered: dict[uuid.UUID, datetime | None],
) -> tuple[int, int]:
    """Evaluate ``rules`` for one account.

    Cooldowns are checked against ``last_triggered``, captured when the rules
    were loaded, so a rule firing for one account does not mute it for the
    remaining accounts of the same scan.
    """
    evaluated = 0
    triggered = 0
    for rule in rules:
        rule_id = rule.rule_id
        evaluated += 1
        if in_cooldown(last_triggered.get(rule_id), ctx.now):
            logger.debug("alert_rule_cooldown", extra={"extra": {"rule_id": str(rule_id)}})
            continue
        savepoint = await session.begin_nested()
        try:
            outcome = await evaluate_rule(session, rule, ctx)
            if outcome.triggered and outcome.reason:
                await dispatch_alert(session, rule, ctx, outcome.reason)
                rule.last_triggered_at = ctx.now
                await session.flush()
                triggered += 1
                logger.info(
                    "alert_rule_triggered",
                    extra={
                        "extra": {
                            "rule_id": str(rule_id),
                            "account_id": str(ctx.account_id),
                            "trigger_type": rule.trigger_type,
                        }
                    },
                )
        except Exception as exc:  # noqa: BLE001
            await savepoint.rollback()
            await session.refresh(rule)
            logger.warning(
                "alert_rule_failed",
                extra={
                    "extra": {"rule_id": str(rule_id), "account_id": str(ctx.account_id), "reason": type(exc).__name__}
                },
            )
            continue
        await savepoint.commit()
    return evaluated, triggered


async def evaluate_alerts_for_account(
    session: AsyncSession,
    org_id: uuid.UUID,
    account_id: uuid.UUID,
    *,
    new_score: int,
    old_score: int | None,
    now: datetime | None = None,
) -> dict[str, int]:
    rules = list(
        (
            await session.scalars(
                select(AccountAlertRule).where(
                    AccountAlertRule.org_id == org_id,
                    AccountAlertRule.enabled.is_(True),
                )
            )
        ).all()
    )
    if not rules:
        return {"evaluated": 0, "triggered": 0}
    ctx = EvaluationContext(
        org_id=org_id, account_id=account_id, new_score=new_score, old_score=old_score, now=now or utcnow()
    )
    evaluated, triggered = await _apply_rules(session, rules, ctx, _cooldown_snapshot(rules))
    return {"evaluated": evaluated, "triggered": triggered}


async def evaluate_time_based_alerts(
    session: AsyncSession, org_id: uuid.UUID, *, now: datetime | None = None
) -> dict[str, int]:
    current = now or utcnow()
    rules = list(
        (
            await session.scalars(
                select(AccountAlertRule).where(
                    AccountAlertRule.org_id == org_id,
                    AccountAlertRule.enabled.is_(True),
                    AccountAlertRule.trigger_type.in_(TIME_BASED_TRIGGERS),
                )
            )
        ).all()
    )
    if not rules:
        return {"evaluated": 0, "triggered": 0}
    accounts = (
        await session.execute(select(AccountScore.account_id, AccountScore.score).where(AccountScore.org_id == org_id))
    ).all()
    last_triggered = _cooldown_snapshot(rules)
    total_evaluated = 0
    total_triggered = 0
    for account_id, score in accounts:
        ctx = EvaluationContext(org_id=org_id, account_id=account_id, new_score=score, old_score=None, now=current)
        evaluated, triggered = await _apply_rules(session, rules, ctx, last_triggered)
        total_evaluated += evaluated
        total_triggered += triggered
    return {"evaluated": total_evaluated, "triggered": total_triggered}


async def orgs_with_time_based_rules(session: AsyncSession) -> list[uuid.UUID]:
    result = await session.scalars(
        select(AccountAlertRule.org_id)
        .where(
            AccountAlertRule.enabled.is_(True),
            AccountAlertRule.trigger_type.in_(TIME_BASED_TRIGGERS),
        )
        .distinct()
    )
    return list(result.all())
