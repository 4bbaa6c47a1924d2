"""SQLite storage for the persistent cache tier and the usage ledger.

Each CacheEngine / TokenTracker owns its own engine (no module-level client)
so several routers can coexist in one process. The engine is sync; callers
run storage work through ``asyncio.to_thread``.
"""

import logging
from pathlib import Path

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from provider_gateway.db.base import Base

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


def create_sqlite_engine(path: str) -> Engine:
    """Create a SQLite engine and make sure all tables exist.

    ``":memory:"`` gives a private in-memory database shared across threads.
    """
    if path == MEMORY_PATH:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        db_file = Path(path)
        db_file.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            f"sqlite:///{db_file}",
            connect_args={"check_same_thread": False, "timeout": 10},
        )

    @event.listens_for(engine, "connect")
    def _set_pragmas(dbapi_conn, _record):  # noqa: ANN001
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    # Register tables on Base.metadata
    import provider_gateway.models  # noqa: F401

    Base.metadata.create_all(engine)
    logger.info("SQLite storage ready at %s", path)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False)


def sqlite_health_check(engine: Engine) -> bool:
    """Check if the database answers a trivial query."""
    try:
        with engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1
    except Exception as e:
        logger.warning("SQLite health check failed: %s", e)
        return False
