"""
Read-side queries grouping fills into TWAP orders.

``list_twaps`` reports an arithmetic mean price per group while
``get_twap`` reports a size-weighted mean. The two rules are kept apart on
purpose until the consumers agree on one.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .database import Fill

SIDE_LABELS = {"B": "buy", "A": "sell"}


def side_label(code: Optional[str]) -> Optional[str]:
    """Map exchange side codes to buy/sell; unknown codes pass through."""
    if code is None:
        return None
    return SIDE_LABELS.get(code, code)


def _as_utc(ts: datetime) -> datetime:
    """Aware values are shifted to UTC; naive values are taken as UTC already."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


def _fill_view(row: Fill) -> Dict[str, Any]:
    return {
        "ts": _iso(row.ts),
        "side": side_label(row.side),
        "price": row.price,
        "size": row.size,
        "tx_hash": row.tx_hash,
    }


def _aggregate(twap_id: Optional[str], rows: List[Fill], weighted: bool) -> Dict[str, Any]:
    prices = [r.price for r in rows if r.price is not None]
    sizes = [r.size for r in rows if r.size is not None]
    stamps = [r.ts for r in rows if r.ts is not None]

    avg_price = None
    if weighted:
        pairs = [(r.price, r.size) for r in rows if r.price is not None and r.size is not None]
        weight = sum(s for _, s in pairs)
        if weight:
            avg_price = sum(p * s for p, s in pairs) / weight
    elif prices:
        avg_price = sum(prices) / len(prices)

    return {
        "twap_id": twap_id,
        "wallet": rows[0].wallet,
        "asset": rows[0].asset,
        "fills_count": len(rows),
        "total_size": sum(sizes),
        "avg_price": avg_price,
        "min_price": min(prices) if prices else None,
        "max_price": max(prices) if prices else None,
        "start_ts": _iso(min(stamps)) if stamps else None,
        "end_ts": _iso(max(stamps)) if stamps else None,
        "fills": [_fill_view(r) for r in rows],
    }


def list_twaps(
    session: Session,
    wallet: Optional[str] = None,
    asset: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    include_ungrouped: bool = False,
) -> List[Dict[str, Any]]:
    """
    Group matching fills by twap id.

    Args:
        session: Store session
        wallet: Only fills of this wallet
        asset: Only fills of this asset
        start: Only fills at or after this time
        end: Only fills at or before this time
        include_ungrouped: Also return fills without a twap id, as one group

    Returns:
        One aggregate per twap id, ungrouped fills last
    """
    stmt = select(Fill)
    if wallet:
        stmt = stmt.where(Fill.wallet == wallet)
    if asset:
        stmt = stmt.where(Fill.asset == asset)
    if start is not None:
        stmt = stmt.where(Fill.ts >= _as_utc(start))
    if end is not None:
        stmt = stmt.where(Fill.ts <= _as_utc(end))
    if not include_ungrouped:
        stmt = stmt.where(Fill.twap_id.is_not(None))
    stmt = stmt.order_by(Fill.twap_id.is_(None), Fill.twap_id, Fill.ts)

    groups: Dict[Optional[str], List[Fill]] = {}
    for row in session.execute(stmt).scalars():
        groups.setdefault(row.twap_id, []).append(row)
    return [_aggregate(twap_id, rows, weighted=False) for twap_id, rows in groups.items()]


def get_twap(session: Session, twap_id: str) -> Optional[Dict[str, Any]]:
    """Aggregate one twap with a size-weighted average price; None if unknown."""
    rows = list(
        session.execute(select(Fill).where(Fill.twap_id == twap_id).order_by(Fill.ts)).scalars()
    )
    if not rows:
        return None
    return _aggregate(twap_id, rows, weighted=True)
