from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from bracketwatch.adapters.broker.ibkr_connection import IBKRConnection, IBKRConnectionConfig


class _FakeIb:
    def __init__(self) -> None:
        self.wrapper = SimpleNamespace(error=self._wrapper_error)
        self.forwarded: list[tuple] = []
        self.connect_calls: list[tuple] = []
        self._connected = False

    def _wrapper_error(self, *args) -> None:
        self.forwarded.append(args)

    def isConnected(self) -> bool:
        return self._connected

    async def connectAsync(self, host, port, *, clientId, timeout, readonly):
        self.connect_calls.append((host, port, clientId, timeout, readonly))
        self._connected = True

    def disconnect(self) -> None:
        self._connected = False


def test_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IB_HOST", "10.0.0.5")
    monkeypatch.setenv("IB_PORT", "4002")
    monkeypatch.setenv("IB_CLIENT_ID", "7")
    monkeypatch.setenv("IB_READONLY", "1")
    monkeypatch.setenv("IB_TIMEOUT", "2.5")
    monkeypatch.setenv("PAPER_ONLY", "0")

    config = IBKRConnectionConfig.from_env()

    assert config.host == "10.0.0.5"
    assert config.port == 4002
    assert config.client_id == 7
    assert config.readonly is True
    assert config.timeout == 2.5
    assert config.paper_only is False


def test_paper_only_blocks_live_port() -> None:
    ib = _FakeIb()
    connection = IBKRConnection(IBKRConnectionConfig(paper_only=True), ib=ib)

    with pytest.raises(RuntimeError, match="PAPER_ONLY"):
        asyncio.run(connection.connect(mode="live"))

    assert ib.connect_calls == []


def test_connect_updates_config_and_status() -> None:
    ib = _FakeIb()
    connection = IBKRConnection(IBKRConnectionConfig(), ib=ib)

    config = asyncio.run(connection.connect(mode="paper", client_id=12))

    assert ib.connect_calls == [("127.0.0.1", 7497, 12, 5.0, False)]
    assert config.client_id == 12
    assert connection.status()["connected"] is True
    connection.disconnect()
    assert not connection.is_connected()


def test_unknown_mode_is_rejected() -> None:
    connection = IBKRConnection(IBKRConnectionConfig(), ib=_FakeIb())

    with pytest.raises(ValueError, match="unknown connection mode"):
        asyncio.run(connection.connect(mode="demo"))


def test_error_filter_suppresses_info_codes_and_notifies_subscribers() -> None:
    ib = _FakeIb()
    connection = IBKRConnection(IBKRConnectionConfig(), ib=ib)
    seen: list[tuple] = []
    unsubscribe = connection.subscribe_gateway_messages(lambda *args: seen.append(args))

    ib.wrapper.error(-1, 2104, "Market data farm connection is OK:usfarm", "")
    ib.wrapper.error(-1, 162, "Historical Market Data Service query cancelled", "")
    ib.wrapper.error(7, 201, "Order rejected", "")
    unsubscribe()
    ib.wrapper.error(8, 202, "Order cancelled", "")

    assert ib.forwarded == [(7, 201, "Order rejected", ""), (8, 202, "Order cancelled", "")]
    assert [args[1] for args in seen] == [2104, 162, 201]


def test_error_filter_is_installed_once() -> None:
    ib = _FakeIb()
    connection = IBKRConnection(IBKRConnectionConfig(), ib=ib)
    asyncio.run(connection.connect())
    seen: list[tuple] = []
    connection.subscribe_gateway_messages(lambda *args: seen.append(args))

    ib.wrapper.error(3, 110, "price does not conform", "")

    assert len(seen) == 1
    assert ib.forwarded == [(3, 110, "price does not conform", "")]
