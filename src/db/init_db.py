from __future__ import annotations

import logging

from src.db.models import Base
from src.db.session import get_engine


log = logging.getLogger(__name__)


def init_db() -> None:
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    log.info("Database ready (%s tables)", len(Base.metadata.tables))
