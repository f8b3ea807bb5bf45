"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

UUID = sa.Uuid(as_uuid=True)
LIVE_JOB_PREDICATE = sa.text("status IN ('queued', 'active')")
ACTIVE_GROUP_PREDICATE = sa.text("status = 'active' AND group_key IS NOT NULL")


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def _org_fk(primary_key: bool = False) -> sa.Column:
    return sa.Column(
        "org_id",
        UUID,
        sa.ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
        primary_key=primary_key,
    )


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("org_id", UUID, primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=128), unique=True),
        sa.Column("is_demo", sa.Boolean(), nullable=False, server_default="0"),
        _created_at(),
    )
    op.create_table(
        "org_settings",
        _org_fk(primary_key=True),
        sa.Column("tier_thresholds_json", sa.Text()),
        sa.Column("half_life_overrides_json", sa.Text()),
        sa.Column("slack_webhook_url", sa.String(length=512)),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            # ORM-managed updated_at (no database trigger).
            nullable=False,
        ),
    )
    op.create_table(
        "companies",
        sa.Column("company_id", UUID, primary_key=True),
        _org_fk(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("domain", sa.String(length=255)),
        sa.Column("size", sa.String(length=16)),
        sa.Column("industry", sa.String(length=128)),
        _created_at(),
    )
    op.create_index("ix_companies_org_id", "companies", ["org_id"])
    op.create_index("ix_companies_org_domain", "companies", ["org_id", "domain"])

    op.create_table(
        "contacts",
        sa.Column("contact_id", UUID, primary_key=True),
        _org_fk(),
        sa.Column("company_id", UUID, sa.ForeignKey("companies.company_id", ondelete="SET NULL")),
        sa.Column("first_name", sa.String(length=128)),
        sa.Column("last_name", sa.String(length=128)),
        sa.Column("email", sa.String(length=255)),
        sa.Column("title", sa.String(length=255)),
        _created_at(),
    )
    op.create_index("ix_contacts_org_company", "contacts", ["org_id", "company_id"])

    op.create_table(
        "signal_sources",
        sa.Column("source_id", UUID, primary_key=True),
        _org_fk(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index("ix_signal_sources_type_status", "signal_sources", ["type", "status"])

    op.create_table(
        "signals",
        sa.Column("signal_id", UUID, primary_key=True),
        _org_fk(),
        sa.Column(
            "source_id", UUID, sa.ForeignKey("signal_sources.source_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("actor_id", UUID, sa.ForeignKey("contacts.contact_id", ondelete="SET NULL")),
        sa.Column("account_id", UUID, sa.ForeignKey("companies.company_id", ondelete="SET NULL")),
        sa.Column("anonymous_id", sa.String(length=255)),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255)),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
    )
    op.create_index("ix_signals_org_idempotency", "signals", ["org_id", "idempotency_key"], unique=True)
    op.create_index("ix_signals_org_account_ts", "signals", ["org_id", "account_id", "timestamp"])
    op.create_index("ix_signals_org_ts", "signals", ["org_id", "timestamp"])

    op.create_table(
        "account_scores",
        sa.Column(
            "account_id", UUID, sa.ForeignKey("companies.company_id", ondelete="CASCADE"), primary_key=True
        ),
        _org_fk(),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("tier", sa.String(length=16), nullable=False),
        sa.Column("trend", sa.String(length=16), nullable=False),
        sa.Column("factors_json", sa.JSON(), nullable=False),
        sa.Column("signal_count", sa.Integer(), nullable=False),
        sa.Column("user_count", sa.Integer(), nullable=False),
        sa.Column("last_signal_at", sa.DateTime(timezone=True)),
        sa.Column("computed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_account_scores_org_score", "account_scores", ["org_id", "score"])
    op.create_index("ix_account_scores_org_tier", "account_scores", ["org_id", "tier"])

    op.create_table(
        "score_snapshots",
        sa.Column("snapshot_id", UUID, primary_key=True),
        _org_fk(),
        sa.Column(
            "account_id", UUID, sa.ForeignKey("companies.company_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("tier", sa.String(length=16), nullable=False),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_score_snapshots_account_captured", "score_snapshots", ["org_id", "account_id", "captured_at"]
    )

    op.create_table(
        "notifications",
        sa.Column("notification_id", UUID, primary_key=True),
        _org_fk(),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text()),
        sa.Column("entity_type", sa.String(length=32)),
        sa.Column("entity_id", sa.String(length=64)),
        sa.Column("read", sa.Boolean(), nullable=False, server_default="0"),
        _created_at(),
    )
    op.create_index("ix_notifications_org_created", "notifications", ["org_id", "created_at"])
    op.create_index("ix_notifications_org_type_entity", "notifications", ["org_id", "type", "entity_id"])

    op.create_table(
        "anomaly_alert_ledger",
        sa.Column("ledger_id", UUID, primary_key=True),
        _org_fk(),
        sa.Column(
            "account_id", UUID, sa.ForeignKey("companies.company_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("anomaly_type", sa.String(length=16), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "notification_id", UUID, sa.ForeignKey("notifications.notification_id", ondelete="SET NULL")
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "org_id", "account_id", "anomaly_type", "window_start", name="uq_anomaly_alert_ledger_window"
        ),
    )
    op.create_index(
        "ix_anomaly_alert_ledger_recent",
        "anomaly_alert_ledger",
        ["org_id", "account_id", "anomaly_type", "created_at"],
    )

    op.create_table(
        "webhook_subscriptions",
        sa.Column("subscription_id", UUID, primary_key=True),
        _org_fk(),
        sa.Column("target_url", sa.String(length=1024), nullable=False),
        sa.Column("event", sa.String(length=64), nullable=False),
        sa.Column("hook_id", sa.String(length=255)),
        sa.Column("secret", sa.String(length=128), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(length=16), nullable=False),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            # ORM-managed updated_at (no database trigger).
            nullable=False,
        ),
    )
    op.create_index(
        "ix_webhook_subscriptions_org_event_active", "webhook_subscriptions", ["org_id", "event", "active"]
    )

    op.create_table(
        "webhook_subscription_deliveries",
        sa.Column("delivery_id", UUID, primary_key=True),
        sa.Column(
            "subscription_id",
            UUID,
            sa.ForeignKey("webhook_subscriptions.subscription_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status_code", sa.Integer()),
        sa.Column("response", sa.Text()),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(length=64)),
        _created_at(),
    )
    op.create_index(
        "ix_webhook_deliveries_subscription_created",
        "webhook_subscription_deliveries",
        ["subscription_id", "created_at"],
    )

    op.create_table(
        "account_alert_rules",
        sa.Column("rule_id", UUID, primary_key=True),
        _org_fk(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("trigger_type", sa.String(length=32), nullable=False),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("channels", sa.JSON(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index(
        "ix_account_alert_rules_org_enabled", "account_alert_rules", ["org_id", "enabled", "trigger_type"]
    )

    op.create_table(
        "workflows",
        sa.Column("workflow_id", UUID, primary_key=True),
        _org_fk(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("trigger_event", sa.String(length=32), nullable=False),
        sa.Column("filters", sa.JSON(), nullable=False),
        sa.Column("action_type", sa.String(length=16), nullable=False),
        sa.Column("action_config", sa.JSON(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("run_count", sa.Integer(), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index("ix_workflows_org_trigger", "workflows", ["org_id", "trigger_event", "enabled"])

    op.create_table(
        "queued_jobs",
        sa.Column("job_id", UUID, primary_key=True),
        sa.Column("lane", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("job_key", sa.String(length=255)),
        sa.Column("group_key", sa.String(length=255)),
        sa.Column("org_id", UUID),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("backoff_seconds", sa.Float(), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True)),
        sa.Column("locked_by", sa.String(length=128)),
        sa.Column("last_error", sa.Text()),
        sa.Column("result", sa.JSON()),
        _created_at(),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "uq_queued_jobs_live_key",
        "queued_jobs",
        ["lane", "job_key"],
        unique=True,
        postgresql_where=LIVE_JOB_PREDICATE,
        sqlite_where=LIVE_JOB_PREDICATE,
    )
    op.create_index(
        "uq_queued_jobs_active_group",
        "queued_jobs",
        ["group_key"],
        unique=True,
        postgresql_where=ACTIVE_GROUP_PREDICATE,
        sqlite_where=ACTIVE_GROUP_PREDICATE,
    )
    op.create_index("ix_queued_jobs_claim", "queued_jobs", ["lane", "status", "run_at"])
    op.create_index("ix_queued_jobs_group_status", "queued_jobs", ["group_key", "status"])
    op.create_index("ix_queued_jobs_finished", "queued_jobs", ["status", "finished_at"])

    op.create_table(
        "job_schedules",
        sa.Column("name", sa.String(length=128), primary_key=True),
        sa.Column("lane", sa.String(length=64), nullable=False),
        sa.Column("job_name", sa.String(length=128), nullable=False),
        sa.Column("cron", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("last_fired_at", sa.DateTime(timezone=True)),
        sa.Column("next_fire_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "worker_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("runner_id", sa.String(length=128)),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.String(length=128)),
        sa.Column("last_error_at", sa.DateTime(timezone=True)),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("worker_heartbeats")
    op.drop_table("job_schedules")
    op.drop_index("ix_queued_jobs_finished", table_name="queued_jobs")
    op.drop_index("ix_queued_jobs_group_status", table_name="queued_jobs")
    op.drop_index("ix_queued_jobs_claim", table_name="queued_jobs")
    op.drop_index("uq_queued_jobs_active_group", table_name="queued_jobs")
    op.drop_index("uq_queued_jobs_live_key", table_name="queued_jobs")
    op.drop_table("queued_jobs")
    op.drop_table("workflows")
    op.drop_table("account_alert_rules")
    op.drop_table("webhook_subscription_deliveries")
    op.drop_table("webhook_subscriptions")
    op.drop_table("anomaly_alert_ledger")
    op.drop_table("notifications")
    op.drop_table("score_snapshots")
    op.drop_table("account_scores")
    op.drop_table("signals")
    op.drop_table("signal_sources")
    op.drop_table("contacts")
    op.drop_table("companies")
    op.drop_table("org_settings")
    op.drop_table("organizations")
