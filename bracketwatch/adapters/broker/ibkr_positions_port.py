from __future__ import annotations

import asyncio
import math
from typing import Optional

from loguru import logger

from bracketwatch.adapters.broker._ib_client import IB, UNSET_DOUBLE
from bracketwatch.adapters.broker.ibkr_connection import IBKRConnection
from bracketwatch.core.orders.errors import GatewayRequestError
from bracketwatch.core.positions.models import PositionSnapshot
from bracketwatch.core.positions.ports import PositionsPort


class IBKRPositionsPort(PositionsPort):
    def __init__(self, connection: IBKRConnection, *, account_updates_timeout: float = 0.5) -> None:
        self._connection = connection
        self._ib: IB = connection.ib
        self._account_updates_timeout = account_updates_timeout

    async def list_positions(self, account: Optional[str] = None) -> list[PositionSnapshot]:
        if not self._ib.isConnected():
            raise GatewayRequestError("IBKR is not connected")

        accounts = [account] if account else [acct for acct in self._ib.managedAccounts() if acct]
        if not accounts:
            return []

        snapshots: list[PositionSnapshot] = []
        fallback_positions: Optional[list[object]] = None
        positions_timeout = max(self._connection.config.timeout, 1.0)
        for acct in accounts:
            try:
                portfolio = await _refresh_account_portfolio(
                    self._ib,
                    acct,
                    timeout=self._account_updates_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("account updates timed out for {}; falling back to reqPositions", acct)
                if fallback_positions is None:
                    try:
                        fallback_positions = await asyncio.wait_for(
                            self._ib.reqPositionsAsync(),
                            timeout=positions_timeout,
                        )
                    except asyncio.TimeoutError as exc:
                        raise GatewayRequestError(
                            "Timed out waiting for IBKR positions snapshot; "
                            "verify the account id or increase IB_TIMEOUT."
                        ) from exc
                for item in fallback_positions:
                    if not _account_matches(getattr(item, "account", None), acct):
                        continue
                    snapshot = _position_to_snapshot(item, acct)
                    if snapshot:
                        snapshots.append(snapshot)
                continue
            for item in portfolio:
                snapshot = _portfolio_to_snapshot(item, acct)
                if snapshot:
                    snapshots.append(snapshot)
        return snapshots


async def _refresh_account_portfolio(ib: IB, account: str, *, timeout: float) -> list[object]:
    try:
        await asyncio.wait_for(ib.reqAccountUpdatesAsync(account), timeout=timeout)
        return [
            item
            for item in ib.portfolio()
            if _account_matches(getattr(item, "account", None), account)
        ]
    finally:
        try:
            ib.reqAccountUpdates(False, account)
        except ConnectionError:
            logger.debug("could not unsubscribe account updates for {}", account)


def _portfolio_to_snapshot(item: object, account: str) -> Optional[PositionSnapshot]:
    contract = getattr(item, "contract", None)
    symbol = getattr(contract, "symbol", None) or getattr(contract, "localSymbol", None)
    qty = _maybe_float(getattr(item, "position", None))
    if not symbol or qty is None:
        return None
    return PositionSnapshot(
        symbol=str(symbol).upper(),
        net_qty=qty,
        avg_price=_maybe_price(getattr(item, "averageCost", None)),
        account=getattr(item, "account", None) or account,
        market_price=_maybe_price(getattr(item, "marketPrice", None)),
        unrealized_pnl=_maybe_pnl(getattr(item, "unrealizedPNL", None)),
    )


def _position_to_snapshot(item: object, account: str) -> Optional[PositionSnapshot]:
    contract = getattr(item, "contract", None)
    symbol = getattr(contract, "symbol", None) or getattr(contract, "localSymbol", None)
    qty = _maybe_float(getattr(item, "position", None))
    if not symbol or qty is None:
        return None
    return PositionSnapshot(
        symbol=str(symbol).upper(),
        net_qty=qty,
        avg_price=_maybe_price(getattr(item, "avgCost", None)),
        account=getattr(item, "account", None) or account,
    )


def _account_matches(item_account: object, account: str) -> bool:
    if item_account is None:
        return True
    return str(item_account).strip().rstrip(".") == account.strip().rstrip(".")


def _maybe_float(value: object) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _maybe_price(value: object) -> Optional[float]:
    price = _maybe_float(value)
    if price is None or not math.isfinite(price) or price >= UNSET_DOUBLE or price <= 0:
        return None
    return price


def _maybe_pnl(value: object) -> Optional[float]:
    pnl = _maybe_float(value)
    if pnl is None or not math.isfinite(pnl) or abs(pnl) >= UNSET_DOUBLE:
        return None
    return pnl
