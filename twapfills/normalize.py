"""
Normalization of upstream fill records.

Upstream datasets disagree on both the envelope around fills and the field
names inside them. ``expand_candidates`` unwraps the envelope and
``normalize_fill`` probes a fixed, ordered list of key paths per canonical
attribute.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Mapping, Optional, Tuple, Union

from .schema import CanonicalFill, has_signal

Number = Union[int, float]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
NANOS_THRESHOLD = 10 ** 15
MILLIS_THRESHOLD = 10 ** 12

NESTED_ARRAY_KEYS = ("fills", "node_fills")
BLOCK_METADATA_KEYS = ("block_number", "block_time")

_MISSING = object()


def to_number(value: Any) -> Optional[Number]:
    """Numbers and numeric strings; bools, NaN and infinities are absent."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        s = value.strip()
        if not s or "_" in s:
            return None
        try:
            return int(s)
        except ValueError:
            pass
        try:
            n = float(s)
        except ValueError:
            return None
        return n if math.isfinite(n) else None
    return None


def to_float(value: Any) -> Optional[float]:
    n = to_number(value)
    return float(n) if n is not None else None


def to_int(value: Any) -> Optional[int]:
    n = to_number(value)
    if n is None:
        return None
    if isinstance(n, float):
        return int(n) if n.is_integer() else None
    return n


def to_string(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value if value else None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value) if not isinstance(value, float) or math.isfinite(value) else None
    return None


def to_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def to_timestamp(value: Any) -> Optional[datetime]:
    """
    Convert an epoch number or ISO-8601 string to an aware UTC datetime.

    Numeric magnitude decides the unit: above 1e15 is nanoseconds, above
    1e12 is milliseconds, anything else is seconds. Returns None for values
    that do not map to a representable date.
    """
    n = to_number(value)
    if n is not None:
        if n > NANOS_THRESHOLD:
            ms = n // 10 ** 6 if isinstance(n, int) else math.floor(n / 1e6)
        elif n > MILLIS_THRESHOLD:
            ms = n
        else:
            ms = n * 1000
        try:
            return EPOCH + timedelta(milliseconds=ms)
        except (OverflowError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(s)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


# Ordered probes per canonical attribute: first path with a coercible value wins.
FIELD_PROBES: Tuple[Tuple[str, Callable[[Any], Any], Tuple[str, ...]], ...] = (
    ("timestamp", to_timestamp, (
        "time", "ts", "timestamp", "blockTime", "block_time", "t", "timeMs", "timeNs", "fill.time",
    )),
    ("wallet", to_string, ("trader", "user", "wallet", "address", "addr", "fill.trader")),
    ("asset", to_string, ("coin", "asset", "sym", "fill.coin")),
    ("side", to_string, ("side", "dir", "fill.side")),
    ("price", to_float, ("px", "price", "fill.px", "fill.price")),
    ("size", to_float, ("sz", "size", "fill.sz", "fill.size")),
    ("twap_id", to_string, ("twapId", "parentOrderId", "oidParent", "order.twapId", "parent.twapId")),
    ("block_number", to_int, ("block", "blockNumber", "block_number", "blk")),
    ("tx_hash", to_string, ("txHash", "tx_hash", "hash", "tx.hash")),
    ("closed_pnl", to_float, ("closedPnl",)),
    ("fee", to_float, ("fee",)),
    ("fee_token", to_string, ("feeToken",)),
    ("direction", to_string, ("dir",)),
    ("builder", to_string, ("builder",)),
    ("order_id", to_int, ("oid",)),
    ("trade_id", to_int, ("tid",)),
    ("client_order_id", to_string, ("cloid",)),
    ("start_position", to_float, ("startPosition",)),
    ("crossed", to_bool, ("crossed",)),
)


def lookup(record: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted key path; returns the module sentinel when absent."""
    cur: Any = record
    for part in path.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def probe(record: Mapping[str, Any], coerce: Callable[[Any], Any], paths: Tuple[str, ...]) -> Any:
    for path in paths:
        raw = lookup(record, path)
        if raw is _MISSING or raw is None:
            continue
        value = coerce(raw)
        if value is not None:
            return value
    return None


def expand_candidates(value: Any) -> List[Any]:
    """
    Unwrap one parsed JSON value into the records it carries.

    Lists yield their elements, ``fills``/``node_fills`` mappings yield the
    nested array, an ``events`` block yields one merged record per
    ``[wallet, payload]`` tuple, and any other value is its own candidate.
    """
    if isinstance(value, list):
        return list(value)
    if not isinstance(value, Mapping):
        return [value]

    for key in NESTED_ARRAY_KEYS:
        nested = value.get(key)
        if isinstance(nested, list):
            return list(nested)

    events = value.get("events")
    if isinstance(events, list):
        candidates = []
        for event in events:
            if not isinstance(event, (list, tuple)) or len(event) < 2:
                continue
            if not isinstance(event[1], Mapping):
                continue
            merged = {"wallet": event[0]}
            for key in BLOCK_METADATA_KEYS:
                if key in value:
                    merged[key] = value[key]
            merged.update(event[1])  # payload wins on collision
            candidates.append(merged)
        return candidates

    return [value]


def normalize_fill(candidate: Any) -> CanonicalFill:
    """Map one candidate to a CanonicalFill; non-mappings normalize to an empty fill."""
    if not isinstance(candidate, Mapping):
        return CanonicalFill(raw=candidate)
    values = {attr: probe(candidate, coerce, paths) for attr, coerce, paths in FIELD_PROBES}
    return CanonicalFill(raw=candidate, **values)


def normalize_value(value: Any) -> List[Tuple[int, CanonicalFill]]:
    """
    Expand, normalize and filter one parsed line.

    Returns (item_idx, fill) pairs. The index is the candidate's position in
    the expansion, assigned before filtering, so it only depends on content.
    """
    out = []
    for idx, candidate in enumerate(expand_candidates(value)):
        fill = normalize_fill(candidate)
        if has_signal(fill):
            out.append((idx, fill))
    return out
