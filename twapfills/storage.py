from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from .database import Fill, IngestedFile, session_scope, utcnow

DEDUP_COLUMNS = ["source_key", "source_line", "item_idx"]


def _dialect_insert(session: Session):
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert
    if name == "sqlite":
        return sqlite_insert
    raise ValueError(f"Unsupported database dialect: {name}")


def insert_fills(session: Session, rows: List[Dict[str, Any]]) -> int:
    """
    Insert rows, ignoring any whose dedup key already exists.

    Existing rows are never modified. Returns the number of rows actually
    inserted.
    """
    if not rows:
        return 0
    insert = _dialect_insert(session)
    stmt = insert(Fill).values(rows).on_conflict_do_nothing(index_elements=DEDUP_COLUMNS)
    result = session.execute(stmt)
    return max(result.rowcount or 0, 0)


class WatermarkStore:
    """
    Records which source files are fully ingested.

    Every call checks out its own session and returns it before exiting,
    so no connection is held across unrelated work.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def has_ingested(self, source_key: str) -> bool:
        with session_scope(self.session_factory) as session:
            found = session.execute(
                select(IngestedFile.s3_key).where(IngestedFile.s3_key == source_key)
            ).first()
            return found is not None

    def mark_ingested(self, source_key: str, etag: Optional[str] = None) -> None:
        """Insert the watermark if absent; an existing entry is left untouched."""
        with session_scope(self.session_factory) as session:
            insert = _dialect_insert(session)
            stmt = insert(IngestedFile).values(
                s3_key=source_key, etag=etag, ingested_at=utcnow()
            ).on_conflict_do_nothing(index_elements=["s3_key"])
            session.execute(stmt)
