"""
Remote object store access.

``AwsCliGateway`` shells out to the aws CLI for requester-pays buckets.
``InMemoryGateway`` serves objects from a dict and is used by the tests.
"""

import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ObjectStoreError, ObjectStoreUnavailable


def _dedupe(names: List[str]) -> List[str]:
    seen = set()
    result = []
    for name in names:
        if name not in seen:
            seen.add(name)
            result.append(name)
    return result


def split_s3_uri(uri: str) -> tuple:
    """Split ``s3://bucket/key/part`` into (bucket, key/part)."""
    if not uri.startswith("s3://"):
        raise ValueError(f"Not an s3 URI: {uri}")
    bucket, _, key = uri[len("s3://"):].partition("/")
    return bucket, key


class ObjectStoreGateway(ABC):
    """Lists, probes and downloads objects under a remote prefix."""

    @abstractmethod
    def list(self, prefix: str, payer: str) -> List[str]:
        """Object names under prefix, relative to it, in listing order."""

    @abstractmethod
    def probe_any(self, prefix: str, payer: str) -> bool:
        """True if at least one object exists under prefix."""

    @abstractmethod
    def fetch(self, key: str, local_path: Path, payer: str) -> None:
        """Download one object to local_path."""


class AwsCliGateway(ObjectStoreGateway):
    def __init__(self, aws_bin: str = "aws", timeout: Optional[float] = None):
        self.aws_bin = aws_bin
        self.timeout = timeout

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        cmd = [self.aws_bin, *args]
        try:
            return subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=self.timeout)
        except OSError as e:
            raise ObjectStoreUnavailable(f"Cannot run {self.aws_bin}: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ObjectStoreError(f"aws {' '.join(args[:2])} timed out") from e

    def probe_any(self, prefix: str, payer: str) -> bool:
        proc = self._run(["s3", "ls", prefix, "--request-payer", payer])
        if proc.returncode != 0:
            return False
        return proc.stdout.strip() != ""

    def list(self, prefix: str, payer: str) -> List[str]:
        proc = self._run(["s3", "ls", prefix, "--recursive", "--request-payer", payer])
        if proc.returncode != 0:
            raise ObjectStoreError(f"aws s3 ls failed: {proc.stderr.strip() or f'(exit {proc.returncode})'}")
        _, key_prefix = split_s3_uri(prefix)
        names = []
        for line in proc.stdout.splitlines():
            # "2025-01-01 00:00:01   123456 node_fills_by_block/hourly/20250101/0.lz4"
            parts = line.split(None, 3)
            if len(parts) < 4:
                continue
            key = parts[3]
            name = key[len(key_prefix):] if key.startswith(key_prefix) else key
            if name and not name.endswith("/"):
                names.append(name)
        return _dedupe(names)

    def fetch(self, key: str, local_path: Path, payer: str) -> None:
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        proc = self._run(["s3", "cp", key, str(local_path), "--request-payer", payer])
        if proc.returncode != 0:
            raise ObjectStoreError(f"aws s3 cp failed for {key}: {proc.stderr.strip() or f'(exit {proc.returncode})'}")


class InMemoryGateway(ObjectStoreGateway):
    """Serves objects from a ``{full_key: bytes}`` mapping."""

    def __init__(self, objects: Optional[Dict[str, bytes]] = None, fail_keys: Optional[set] = None):
        self.objects = dict(objects or {})
        self.fail_keys = set(fail_keys or ())
        self.fetched: List[str] = []
        self.probed: List[str] = []

    def probe_any(self, prefix: str, payer: str) -> bool:
        self.probed.append(prefix)
        return any(key.startswith(prefix) for key in self.objects)

    def list(self, prefix: str, payer: str) -> List[str]:
        return _dedupe([key[len(prefix):] for key in self.objects if key.startswith(prefix)])

    def fetch(self, key: str, local_path: Path, payer: str) -> None:
        self.fetched.append(key)
        if key in self.fail_keys:
            raise ObjectStoreError(f"fetch failed for {key}")
        if key not in self.objects:
            raise ObjectStoreError(f"no such object: {key}")
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(self.objects[key])
