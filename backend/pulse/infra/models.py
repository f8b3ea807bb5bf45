"""Import every ORM module so ``Base.metadata`` is complete for create_all and alembic."""

from pulse.domain.accounts import db_models as accounts_db_models  # noqa: F401
from pulse.domain.alerts import db_models as alerts_db_models  # noqa: F401
from pulse.domain.anomalies import db_models as anomalies_db_models  # noqa: F401
from pulse.domain.notifications import db_models as notifications_db_models  # noqa: F401
from pulse.domain.ops import db_models as ops_db_models  # noqa: F401
from pulse.domain.orgs import db_models as orgs_db_models  # noqa: F401
from pulse.domain.queue import db_models as queue_db_models  # noqa: F401
from pulse.domain.scoring import db_models as scoring_db_models  # noqa: F401
from pulse.domain.signals import db_models as signals_db_models  # noqa: F401
from pulse.domain.webhooks import db_models as webhooks_db_models  # noqa: F401
from pulse.domain.workflows import db_models as workflows_db_models  # noqa: F401
