from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from pulse.infra.metrics import metrics

logger = logging.getLogger(__name__)


async def run_side_effect(
    session: AsyncSession,
    effect: str,
    action: Callable[[], Awaitable[Any]],
    *,
    context: dict[str, Any] | None = None,
) -> bool:
    """Run ``action`` inside a SAVEPOINT; a failure is rolled back, logged and counted.

    Returns ``True`` when the action succeeded. The outer transaction is never
    affected by a failing side effect.
    """
    savepoint = await session.begin_nested()
    try:
        await action()
    except Exception as exc:  # noqa: BLE001
        await savepoint.rollback()
        metrics.record_side_effect_error(effect)
        logger.warning(
            "side_effect_failed",
            extra={"extra": {"effect": effect, "reason": type(exc).__name__, **(context or {})}},
        )
        return False
    await savepoint.commit()
    return True
