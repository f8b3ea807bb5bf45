from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from pulse.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlackResult:
    ok: bool
    status_code: int | None = None
    error_code: str | None = None
    retry_after: float | None = None


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


async def send_slack_message(
    webhook_url: str,
    text: str,
    *,
    blocks: list[dict[str, Any]] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SlackResult:
    message: dict[str, Any] = {"text": text}
    if blocks:
        message["blocks"] = blocks
    try:
        async with httpx.AsyncClient(timeout=settings.slack_timeout_seconds, transport=transport) as client:
            response = await client.post(webhook_url, json=message)
    except httpx.HTTPError as exc:
        logger.warning("slack_send_failed", extra={"extra": {"reason": type(exc).__name__}})
        return SlackResult(ok=False, error_code=type(exc).__name__)
    if 200 <= response.status_code < 300:
        return SlackResult(ok=True, status_code=response.status_code)
    logger.warning("slack_send_rejected", extra={"extra": {"status": response.status_code}})
    return SlackResult(
        ok=False,
        status_code=response.status_code,
        error_code=f"status_{response.status_code}",
        retry_after=parse_retry_after(response.headers.get("Retry-After")),
    )


def tier_emoji(tier: str) -> str:
    return {"HOT": "\U0001F525", "WARM": "\U0001F7E0", "COLD": "\U0001F535"}.get(tier, "⚪")


def _context(text: str) -> dict[str, Any]:
    return {"type": "context", "elements": [{"type": "mrkdwn", "text": text}]}


def build_tier_change_blocks(
    account_name: str,
    old_tier: str,
    new_tier: str,
    *,
    score: int,
    signal_count: int,
    user_count: int,
    date_label: str,
) -> tuple[str, list[dict[str, Any]]]:
    order = ["INACTIVE", "COLD", "WARM", "HOT"]
    upgraded = order.index(new_tier) > order.index(old_tier) if old_tier in order and new_tier in order else False
    emoji = "\U0001F4C8" if upgraded else "\U0001F4C9"
    verb = "upgraded" if upgraded else "downgraded"
    text = f"{emoji} {account_name} {verb} from {old_tier} to {new_tier}"
    blocks = [
        {"type": "header", "text": {"type": "plain_text", "text": f"{emoji} Tier Change", "emoji": True}},
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"*{account_name}* {verb} from {tier_emoji(old_tier)} *{old_tier}* "
                    f"→ {tier_emoji(new_tier)} *{new_tier}*"
                ),
            },
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Score:*\n{score}/100"},
                {"type": "mrkdwn", "text": f"*Signal Count:*\n{signal_count}"},
                {"type": "mrkdwn", "text": f"*Active Users:*\n{user_count}"},
                {"type": "mrkdwn", "text": f"*Direction:*\n{'Trending Up' if upgraded else 'Trending Down'}"},
            ],
        },
        _context(f"{settings.app_name} • {date_label}"),
    ]
    return text, blocks


def build_hot_account_blocks(account_name: str, *, score: int, signal_count: int) -> tuple[str, list[dict[str, Any]]]:
    text = f"\U0001F525 New HOT account: {account_name} (score: {score})"
    blocks = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": "\U0001F525 New HOT Account Detected", "emoji": True},
        },
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"*{account_name}* has reached HOT status with a score of *{score}/100* "
                    f"and *{signal_count} signals*."
                ),
            },
        },
        _context(f"{settings.app_name} • Take action before they go cold!"),
    ]
    return text, blocks


def build_alert_blocks(rule_name: str, account_name: str, reason: str) -> tuple[str, list[dict[str, Any]]]:
    text = f"Alert: {rule_name} - {account_name}"
    blocks = [
        {"type": "header", "text": {"type": "plain_text", "text": f"\U0001F6A8 {rule_name}", "emoji": True}},
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*{account_name}*\n{reason}"}},
        _context(settings.app_name),
    ]
    return text, blocks
