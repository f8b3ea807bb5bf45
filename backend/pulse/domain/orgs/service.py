from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.orgs.db_models import Organization, OrgSettings
from pulse.domain.scoring.engine import normalize_thresholds

logger = logging.getLogger(__name__)


@dataclass
class OrgScoringConfig:
    tier_thresholds: dict[str, int]
    half_life_overrides: dict[str, float] = field(default_factory=dict)


def _load_json_object(raw: str | None, *, org_id: uuid.UUID, field_name: str) -> dict | None:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("org_settings_invalid_json", extra={"extra": {"org_id": str(org_id), "field": field_name}})
        return None
    if not isinstance(value, dict):
        logger.warning("org_settings_invalid_json", extra={"extra": {"org_id": str(org_id), "field": field_name}})
        return None
    return value


def _clean_half_lives(raw: dict | None) -> dict[str, float]:
    cleaned: dict[str, float] = {}
    for signal_type, value in (raw or {}).items():
        try:
            days = float(value)
        except (TypeError, ValueError):
            continue
        if days > 0:
            cleaned[str(signal_type)] = days
    return cleaned


async def load_org_scoring_config(session: AsyncSession, org_id: uuid.UUID) -> OrgScoringConfig:
    row = await session.get(OrgSettings, org_id)
    if row is None:
        return OrgScoringConfig(tier_thresholds=normalize_thresholds(None))
    thresholds = _load_json_object(row.tier_thresholds_json, org_id=org_id, field_name="tier_thresholds")
    half_lives = _load_json_object(row.half_life_overrides_json, org_id=org_id, field_name="half_life_overrides")
    return OrgScoringConfig(
        tier_thresholds=normalize_thresholds(thresholds),
        half_life_overrides=_clean_half_lives(half_lives),
    )


async def get_slack_webhook_url(session: AsyncSession, org_id: uuid.UUID) -> str | None:
    return await session.scalar(select(OrgSettings.slack_webhook_url).where(OrgSettings.org_id == org_id))


async def ensure_org(session: AsyncSession, org_id: uuid.UUID, *, name: str = "Default") -> Organization:
    org = await session.get(Organization, org_id)
    if org is None:
        org = Organization(org_id=org_id, name=name)
        session.add(org)
        await session.flush()
    return org
