import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine import make_url

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pulse.domain.accounts import db_models as accounts_db_models  # noqa: F401,E402
from pulse.domain.alerts import db_models as alerts_db_models  # noqa: F401,E402
from pulse.domain.anomalies import db_models as anomalies_db_models  # noqa: F401,E402
from pulse.domain.notifications import db_models as notifications_db_models  # noqa: F401,E402
from pulse.domain.ops import db_models as ops_db_models  # noqa: F401,E402
from pulse.domain.orgs import db_models as orgs_db_models  # noqa: F401,E402
from pulse.domain.queue import db_models as queue_db_models  # noqa: F401,E402
from pulse.domain.scoring import db_models as scoring_db_models  # noqa: F401,E402
from pulse.domain.signals import db_models as signals_db_models  # noqa: F401,E402
from pulse.domain.webhooks import db_models as webhooks_db_models  # noqa: F401,E402
from pulse.domain.workflows import db_models as workflows_db_models  # noqa: F401,E402
from pulse.infra.db import Base  # noqa: E402
from pulse.settings import settings  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _sync_database_url(raw_url: str) -> str:
    url = make_url(raw_url)
    if url.drivername.endswith("+aiosqlite"):
        url = url.set(drivername="sqlite")
    return url.render_as_string(hide_password=False)


config.set_main_option("sqlalchemy.url", _sync_database_url(settings.database_url))

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
