from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PositionSnapshot:
    symbol: str
    net_qty: float
    avg_price: Optional[float] = None
    account: Optional[str] = None
    market_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None

    @property
    def is_long(self) -> bool:
        return self.net_qty > 0

    @property
    def is_short(self) -> bool:
        return self.net_qty < 0
