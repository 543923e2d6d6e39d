from sqlalchemy.engine import Engine
from sqlmodel import create_engine, SQLModel, Session
from . import models  # noqa: F401  (registers tables on SQLModel.metadata)
from .config import database_url, database_timeout, load_policy
from .logging_utils import get_logger

logger = get_logger("typerush.init_db")


def create_db_engine(url: str, timeout: float = 5.0) -> Engine:
    """Build the engine handed to the app; every store call is bounded by `timeout`."""
    if url.startswith("sqlite"):
        # sqlite waits up to `timeout` seconds on a locked database, then errors
        return create_engine(url, echo=False, connect_args={"check_same_thread": False, "timeout": timeout})
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
        pool_timeout=timeout,
    )


def init_db(url: str = "", timeout: float = 0) -> Engine:
    from .migrations import run_migrations
    from .crud import purge_stale_runs

    url = url or database_url()
    engine = create_db_engine(url, timeout or database_timeout())
    SQLModel.metadata.create_all(engine)
    run_migrations(engine)
    with Session(engine) as session:
        purge_stale_runs(session, load_policy())
    logger.info("db_initialized", extra={"url": url})
    return engine


if __name__ == '__main__':
    init_db()
