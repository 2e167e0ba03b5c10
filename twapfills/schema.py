import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

SIGNAL_FIELDS = ("wallet", "price", "size", "asset", "timestamp")


@dataclass
class CanonicalFill:
    """
    A fill in canonical form. Every attribute is independently optional;
    ``raw`` keeps the candidate exactly as it was extracted.
    """

    block_number: Optional[int] = None
    tx_hash: Optional[str] = None
    timestamp: Optional[datetime] = None
    wallet: Optional[str] = None
    asset: Optional[str] = None
    side: Optional[str] = None
    price: Optional[float] = None
    size: Optional[float] = None
    twap_id: Optional[str] = None
    closed_pnl: Optional[float] = None
    fee: Optional[float] = None
    fee_token: Optional[str] = None
    direction: Optional[str] = None
    builder: Optional[str] = None
    order_id: Optional[int] = None
    trade_id: Optional[int] = None
    client_order_id: Optional[str] = None
    start_position: Optional[float] = None
    crossed: Optional[bool] = None
    raw: Any = field(default=None, repr=False)


def has_signal(fill: CanonicalFill) -> bool:
    """
    True if the fill carries at least one identifying field.

    Wrapper and administrative lines normalize to fills with none of these
    and must not be persisted as empty rows.
    """
    return any(getattr(fill, name) is not None for name in SIGNAL_FIELDS)


def to_row(fill: CanonicalFill, source_key: str, source_line: int, item_idx: int) -> Dict[str, Any]:
    """Map a fill to a ``fills`` table row."""
    return {
        "source_key": source_key,
        "source_line": source_line,
        "item_idx": item_idx,
        "block_num": fill.block_number,
        "tx_hash": fill.tx_hash,
        "ts": fill.timestamp,
        "wallet": fill.wallet,
        "asset": fill.asset,
        "side": fill.side,
        "price": fill.price,
        "size": fill.size,
        "twap_id": fill.twap_id,
        "closed_pnl": fill.closed_pnl,
        "fee": fill.fee,
        "fee_token": fill.fee_token,
        "dir": fill.direction,
        "builder": fill.builder,
        "oid": fill.order_id,
        "tid": fill.trade_id,
        "cloid": fill.client_order_id,
        "start_position": fill.start_position,
        "crossed": fill.crossed,
        "raw": json.dumps(fill.raw, ensure_ascii=False, default=str),
    }
