"""
Runtime configuration.

Every option can be set through the environment (or a .env file loaded by
``load_env``); CLI flags override individual fields.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigError

DEFAULT_S3_PREFIX = "s3://hl-mainnet-node-data/node_fills_by_block"
DEFAULT_DATABASE_URL = "sqlite:///data/fills.db"

# A fills row binds 23 parameters; SQLite allows 32766 per statement.
MAX_CHUNK_SIZE = 1400


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_str(env: Mapping[str, str], name: str, default: Optional[str]) -> Optional[str]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


@dataclass(frozen=True)
class Settings:
    s3_prefix: str = DEFAULT_S3_PREFIX
    request_payer: str = "requester"
    backfill_days: int = 180
    max_objects: int = 0  # 0 = no cap
    concurrency: int = 4
    chunk_size: int = 1000
    scratch_root: Optional[Path] = None
    database_url: str = DEFAULT_DATABASE_URL
    pool_size: int = 10
    aws_bin: str = "aws"
    unlz4_bin: str = "unlz4"
    log_level: str = "INFO"
    log_dir: Path = Path("logs")

    def __post_init__(self):
        if not 1 <= self.chunk_size <= MAX_CHUNK_SIZE:
            raise ConfigError(f"chunk_size must be between 1 and {MAX_CHUNK_SIZE}, got {self.chunk_size}")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            env: Mapping to read from (default: os.environ)

        Raises:
            ConfigError: If a numeric option is not an integer
        """
        if env is None:
            env = os.environ
        scratch = _env_str(env, "DATA_TMP_DIR", None)
        return cls(
            s3_prefix=_env_str(env, "HL_S3_FILLS_PREFIX", DEFAULT_S3_PREFIX).rstrip("/"),
            request_payer=_env_str(env, "AWS_REQUEST_PAYER", "requester"),
            backfill_days=_env_int(env, "BACKFILL_DAYS", 180),
            max_objects=_env_int(env, "MAX_BLOCKS", 0),
            concurrency=_env_int(env, "INGEST_CONCURRENCY", 4),
            chunk_size=_env_int(env, "BULK_INSERT_CHUNK_SIZE", 1000),
            scratch_root=Path(scratch) if scratch else None,
            database_url=_env_str(env, "DATABASE_URL", DEFAULT_DATABASE_URL),
            pool_size=_env_int(env, "PGPOOL_MAX", 10),
            aws_bin=_env_str(env, "AWS_CLI_PATH", "aws"),
            unlz4_bin=_env_str(env, "UNLZ4_PATH", "unlz4"),
            log_level=_env_str(env, "LOG_LEVEL", "INFO").upper(),
            log_dir=Path(_env_str(env, "LOG_DIR", "logs")),
        )

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)
