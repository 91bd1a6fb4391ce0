from __future__ import annotations

from typing import Optional

from bracketwatch.core.positions.models import PositionSnapshot
from bracketwatch.core.positions.ports import PositionsPort


class PositionsService:
    def __init__(self, port: PositionsPort) -> None:
        self._port = port

    async def list_positions(self, account: Optional[str] = None) -> list[PositionSnapshot]:
        positions = await self._port.list_positions(account=account)
        return [position for position in positions if abs(position.net_qty) > 1e-9]

    async def find_position(
        self,
        symbol: str,
        *,
        account: Optional[str] = None,
    ) -> Optional[PositionSnapshot]:
        wanted = symbol.strip().upper()
        for position in await self.list_positions(account=account):
            if position.symbol.strip().upper() == wanted:
                return position
        return None
