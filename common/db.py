from __future__ import annotations

import logging

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url


logger = logging.getLogger(__name__)


def get_engine(database_url: str) -> Engine:
    url = make_url(database_url)

    # Connection parameters, never the password.
    logger.info(
        "[DB] Creating engine backend=%s host=%s port=%s db=%s user=%s",
        url.get_backend_name(),
        url.host,
        url.port,
        url.database,
        url.username,
    )

    kwargs = {"pool_pre_ping": True, "future": True}
    if url.get_backend_name() != "sqlite":
        kwargs.update(pool_size=5, max_overflow=10, pool_recycle=300)

    engine = create_engine(url, **kwargs)

    # Connection test: shows in logs whether the service actually reaches the DB.
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[DB] Connection test OK")
    except Exception:
        logger.exception("[DB] Connection test FAILED")

    return engine


def ping(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("[DB] Ping failed: %s", e)
        return False
