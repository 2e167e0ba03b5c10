"""
Ingestion of one local newline-delimited JSON file.

Each non-blank line is parsed, expanded into candidates and normalized.
Rows that pass the signal filter are written in fixed-size chunks with
insert-or-ignore semantics, so re-ingesting a file never duplicates a fill.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .database import session_scope
from .errors import PersistenceError
from .logger import get_logger
from .normalize import expand_candidates, normalize_fill
from .schema import has_signal, to_row
from .storage import insert_fills

DEFAULT_CHUNK_SIZE = 1000


@dataclass
class IngestResult:
    lines_seen: int = 0
    rows_inserted: int = 0
    lines_skipped: int = 0
    candidates: int = 0


def is_likely_json_line(line: str) -> bool:
    return line.startswith("{") or line.startswith("[")


def _flush(session_factory: sessionmaker, rows: List[Dict[str, Any]], source_key: str, inserted_so_far: int) -> int:
    try:
        with session_scope(session_factory) as session:
            return insert_fills(session, rows)
    except SQLAlchemyError as e:
        raise PersistenceError(
            f"Chunk insert failed for {source_key}: {e}",
            source_key=source_key,
            rows_inserted=inserted_so_far,
        ) from e


def ingest_file(
    path: Path,
    source_key: str,
    session_factory: sessionmaker,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> IngestResult:
    """
    Ingest a local file under a logical source key.

    Args:
        path: Local file to read
        source_key: Stable identifier of the file, first part of the dedup key
        session_factory: Factory for store sessions; one session per chunk
        chunk_size: Rows per insert statement

    Returns:
        IngestResult with line, candidate and insert counts

    Raises:
        PersistenceError: If a chunk cannot be written. Chunks committed
            before the failure stay in place; re-ingesting skips them.
    """
    logger = get_logger()
    result = IngestResult()
    path = Path(path)
    if not path.is_file():
        logger.warning("Not a file, nothing to ingest", path=str(path), source_key=source_key)
        return result

    buffer: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            trimmed = line.strip()
            if not trimmed:
                continue
            result.lines_seen += 1
            line_no = result.lines_seen
            if not is_likely_json_line(trimmed):
                result.lines_skipped += 1
                continue
            try:
                value = json.loads(trimmed)
            except ValueError:
                result.lines_skipped += 1
                logger.debug("Skipping malformed line", source_key=source_key, line=line_no)
                continue

            for item_idx, candidate in enumerate(expand_candidates(value)):
                result.candidates += 1
                fill = normalize_fill(candidate)
                if not has_signal(fill):
                    continue
                buffer.append(to_row(fill, source_key, line_no, item_idx))

            while len(buffer) >= chunk_size:
                result.rows_inserted += _flush(session_factory, buffer[:chunk_size], source_key, result.rows_inserted)
                buffer = buffer[chunk_size:]

    if buffer:
        result.rows_inserted += _flush(session_factory, buffer, source_key, result.rows_inserted)

    logger.debug(
        "Ingested file",
        source_key=source_key,
        lines=result.lines_seen,
        skipped=result.lines_skipped,
        inserted=result.rows_inserted,
    )
    return result
