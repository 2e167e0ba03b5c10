"""
Pytest configuration and shared fixtures.
"""

from pathlib import Path
from typing import List

import pytest

from twapfills.archive import InMemoryExpander
from twapfills.config import Settings
from twapfills.database import create_db_engine, get_session_factory, init_database
from twapfills.logger import get_logger, reset_logger

from sample_data import S3_PREFIX


@pytest.fixture(autouse=True)
def quiet_logger(tmp_path):
    """Route the global logger to a temp dir, without console output."""
    reset_logger()
    logger = get_logger(log_dir=tmp_path / "logs", enable_console=False)
    yield logger
    reset_logger()


@pytest.fixture
def engine(tmp_path):
    """SQLite engine with tables created."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'fills.db'}")
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        s3_prefix=S3_PREFIX,
        concurrency=3,
        chunk_size=2,
        scratch_root=tmp_path / "scratch",
        database_url=f"sqlite:///{tmp_path / 'fills.db'}",
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def write_lines(tmp_path):
    """Write lines to a file under tmp_path and return its path."""
    def _write(lines: List[str], name: str = "fills.jsonl") -> Path:
        path = tmp_path / name
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path
    return _write


@pytest.fixture
def expander() -> InMemoryExpander:
    return InMemoryExpander()

