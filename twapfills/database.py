"""
Database schema and connection management.

Uses SQLAlchemy so the same models run on SQLite (local runs, tests) and
PostgreSQL (production, via DATABASE_URL).
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    BigInteger,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import StoreUnavailable

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Fill(Base):
    """One extracted fill, keyed by its position in the source file."""

    __tablename__ = "fills"
    __table_args__ = (
        UniqueConstraint("source_key", "source_line", "item_idx", name="uq_fills_source"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_key = Column(String, nullable=False)
    source_line = Column(Integer, nullable=False)  # 1-based, non-blank lines only
    item_idx = Column(Integer, nullable=False)
    block_num = Column(BigInteger)
    tx_hash = Column(String)
    ts = Column(DateTime(timezone=True), index=True)
    wallet = Column(String, index=True)
    asset = Column(String, index=True)
    side = Column(String)
    price = Column(Float)
    size = Column(Float)
    twap_id = Column(String, index=True)
    closed_pnl = Column(Float)
    fee = Column(Float)
    fee_token = Column(String)
    dir = Column(String)
    builder = Column(String)
    oid = Column(BigInteger)
    tid = Column(BigInteger)
    cloid = Column(String)
    start_position = Column(Float)
    crossed = Column(Boolean)
    raw = Column(Text)


class IngestedFile(Base):
    """Watermark: presence means the file's rows are durably stored."""

    __tablename__ = "ingested_files"

    s3_key = Column(String, primary_key=True)
    etag = Column(String)
    ingested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


def create_db_engine(database_url: str, pool_size: int = 10) -> Engine:
    """
    Create an engine with a connection pool.

    Args:
        database_url: SQLAlchemy URL (sqlite:///path or postgresql://...)
        pool_size: Connections kept in the pool (ignored for SQLite)

    Returns:
        SQLAlchemy Engine
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        # Workers hand sessions across threads; wait on the file lock instead of failing.
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(url, pool_size=pool_size, max_overflow=0, pool_pre_ping=True)


def init_database(engine: Engine) -> None:
    """Create tables that do not exist yet."""
    Base.metadata.create_all(engine)


def get_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Provide a transactional scope around one unit of work.

    Commits on success, rolls back on any error, and always returns the
    connection to the pool.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ensure_connected(engine: Engine) -> None:
    """
    Check that the store answers a trivial query.

    Raises:
        StoreUnavailable: If no connection can be made
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("select 1"))
    except SQLAlchemyError as e:
        raise StoreUnavailable(f"Database unreachable: {e}") from e
