from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from bracketwatch.adapters.broker._ib_client import UNSET_DOUBLE
from bracketwatch.adapters.broker.ibkr_connection import IBKRConnection, IBKRConnectionConfig
from bracketwatch.adapters.broker.ibkr_positions_port import IBKRPositionsPort
from bracketwatch.core.orders.errors import GatewayRequestError


def _portfolio_item(symbol: str, qty: float, *, account: str = "DU123") -> SimpleNamespace:
    return SimpleNamespace(
        contract=SimpleNamespace(symbol=symbol),
        position=qty,
        averageCost=100.0,
        marketPrice=101.0,
        unrealizedPNL=UNSET_DOUBLE,
        account=account,
    )


class _FakeIb:
    def __init__(self, *, hang_account_updates: bool = False) -> None:
        self._hang = hang_account_updates
        self.unsubscribed: list[str] = []
        self.position_requests = 0

    def isConnected(self) -> bool:
        return True

    def managedAccounts(self) -> list[str]:
        return ["DU123", ""]

    async def reqAccountUpdatesAsync(self, account: str) -> None:
        if self._hang:
            await asyncio.sleep(5)

    def reqAccountUpdates(self, subscribe: bool, account: str) -> None:
        self.unsubscribed.append(account)

    def portfolio(self) -> list[SimpleNamespace]:
        return [_portfolio_item("aapl", 10), _portfolio_item("MSFT", 3, account="DU999")]

    async def reqPositionsAsync(self) -> list[SimpleNamespace]:
        self.position_requests += 1
        return [
            SimpleNamespace(contract=SimpleNamespace(symbol="TSLA"), position=-5, avgCost=250.0, account="DU123"),
            SimpleNamespace(contract=SimpleNamespace(symbol="NVDA"), position=2, avgCost=900.0, account="DU999"),
        ]


def _port(ib: _FakeIb) -> IBKRPositionsPort:
    connection = IBKRConnection(IBKRConnectionConfig(timeout=1.0), ib=ib)
    return IBKRPositionsPort(connection, account_updates_timeout=0.01)


def test_positions_from_portfolio_for_managed_accounts() -> None:
    ib = _FakeIb()

    positions = asyncio.run(_port(ib).list_positions())

    assert len(positions) == 1
    position = positions[0]
    assert position.symbol == "AAPL"
    assert position.net_qty == 10.0
    assert position.avg_price == 100.0
    assert position.market_price == 101.0
    assert position.unrealized_pnl is None
    assert ib.unsubscribed == ["DU123"]


def test_account_update_timeout_falls_back_to_positions() -> None:
    ib = _FakeIb(hang_account_updates=True)

    positions = asyncio.run(_port(ib).list_positions(account="DU123"))

    assert [(item.symbol, item.net_qty) for item in positions] == [("TSLA", -5.0)]
    assert ib.position_requests == 1
    assert ib.unsubscribed == ["DU123"]


def test_positions_require_connection() -> None:
    ib = _FakeIb()
    ib.isConnected = lambda: False  # type: ignore[method-assign]

    with pytest.raises(GatewayRequestError):
        asyncio.run(_port(ib).list_positions())
