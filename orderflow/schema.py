"""Registers every model on the shared metadata and creates tables for local runs.

Production schemas are managed by the Alembic revisions under `alembic/`.
"""

from sqlalchemy.engine import Engine

from orderflow.common.db import Base
from orderflow.services.inventory import models as inventory_models  # noqa: F401
from orderflow.services.orders import models as order_models  # noqa: F401
from orderflow.services.payments import models as payment_models  # noqa: F401


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)
