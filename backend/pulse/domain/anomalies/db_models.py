from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from pulse.infra.db import UUID_TYPE, Base


class AnomalyAlertLedger(Base):
    """One row per anomaly notification emitted for an account."""

    __tablename__ = "anomaly_alert_ledger"

    ledger_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("companies.company_id", ondelete="CASCADE"),
        nullable=False,
    )
    anomaly_type: Mapped[str] = mapped_column(String(16), nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    notification_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID_TYPE, ForeignKey("notifications.notification_id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "org_id", "account_id", "anomaly_type", "window_start", name="uq_anomaly_alert_ledger_window"
        ),
        Index("ix_anomaly_alert_ledger_recent", "org_id", "account_id", "anomaly_type", "created_at"),
    )
