"""
crud.py

Small store helpers shared by the sync pipeline: dialect-aware INSERT
construction and the sync_state checkpoint accessors.
"""
import logging
from typing import Optional

from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session

from mediacanon.models import SyncState
from mediacanon.utils.timezone import utc_now

logger = logging.getLogger(__name__)


def dialect_insert(conn: Connection, table):
    """INSERT construct supporting on_conflict_do_nothing() on the bound dialect."""
    name = conn.dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert
        return pg_insert(table)
    if name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert
        return sqlite_insert(table)
    raise NotImplementedError(f"bulk upserts are not supported on {name}")


def insert_ignore_conflicts(conn: Connection, table, rows):
    """Multi-row INSERT ... ON CONFLICT DO NOTHING. Returns affected row count."""
    if not rows:
        return 0
    stmt = dialect_insert(conn, table).values(rows).on_conflict_do_nothing()
    return conn.execute(stmt).rowcount


def get_sync_state(db: Session, key: str) -> Optional[str]:
    row = db.get(SyncState, key)
    return row.value if row else None


def set_sync_state(db: Session, key: str, value: str) -> None:
    row = db.get(SyncState, key)
    if row is None:
        db.add(SyncState(key=key, value=value, updated_at=utc_now()))
    else:
        row.value = value
        row.updated_at = utc_now()
    db.commit()
