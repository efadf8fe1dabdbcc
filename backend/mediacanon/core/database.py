from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
import logging

from mediacanon.core.config import settings

logger = logging.getLogger(__name__)


def make_engine(url: str, pool_size: int = 20) -> Engine:
    """Create an engine sized for the bulk import worker pool.

    SQLite (used by tests and local experiments) gets a plain engine; the
    import workers each hold one pooled connection while a batch is in flight.
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    # pool_pre_ping: verify connections before using them
    # pool_recycle: recycle connections after N seconds to prevent stale connections
    return create_engine(
        url,
        pool_size=pool_size,
        max_overflow=pool_size,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = make_engine(settings.database_url, pool_size=settings.import_workers + 5)
SessionLocal = make_session_factory(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None):
    """Create missing tables. Safe to call on every startup."""
    from mediacanon.models import Base
    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info("Database schema ensured")
