from __future__ import annotations

import pytest

from bracketwatch.core.brackets.models import (
    Bracket,
    BracketState,
    BracketValidationError,
    MonitorConfigError,
    MonitorOptions,
    PositionSide,
    RetryPolicy,
)
from bracketwatch.core.orders.models import OrderSide


def test_bracket_defaults_and_normalization() -> None:
    bracket = Bracket(protective_order_id=" 11 ", stop_order_id="12", symbol=" aapl ", qty=5)

    assert bracket.protective_order_id == "11"
    assert bracket.symbol == "AAPL"
    assert bracket.state == BracketState.ACTIVE
    assert bracket.side == PositionSide.LONG
    assert bracket.order_ids == ("11", "12")
    assert not bracket.cancellation_attempted
    assert not bracket.cancellation_failed
    assert len(bracket.bracket_id) == 12


def test_bracket_accepts_side_as_text() -> None:
    bracket = Bracket(
        protective_order_id="1",
        stop_order_id="2",
        symbol="TSLA",
        qty=1,
        side="short",
        take_profit_price=90.0,
        stop_price=105.0,
    )

    assert bracket.side == PositionSide.SHORT
    assert bracket.side.entry_side == OrderSide.SELL
    assert bracket.side.exit_side == OrderSide.BUY


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"protective_order_id": ""}, "protective_order_id is required"),
        ({"stop_order_id": "  "}, "stop_order_id is required"),
        ({"stop_order_id": "1"}, "must be different orders"),
        ({"entry_order_id": "2"}, "entry order cannot double"),
        ({"symbol": ""}, "symbol is required"),
        ({"qty": 0}, "qty must be greater than zero"),
        ({"entry_price": -1.0}, "entry_price must be greater than zero"),
        ({"take_profit_price": 95.0, "stop_price": 99.0}, "above stop_price for LONG"),
        ({"side": "SIDEWAYS"}, "invalid side"),
    ],
)
def test_bracket_validation(overrides: dict, message: str) -> None:
    values = dict(protective_order_id="1", stop_order_id="2", symbol="AAPL", qty=10)
    values.update(overrides)

    with pytest.raises(BracketValidationError, match=message):
        Bracket(**values)


def test_short_bracket_requires_take_profit_below_stop() -> None:
    with pytest.raises(BracketValidationError, match="below stop_price for SHORT"):
        Bracket(
            protective_order_id="1",
            stop_order_id="2",
            symbol="AAPL",
            qty=10,
            side=PositionSide.SHORT,
            take_profit_price=110.0,
            stop_price=105.0,
        )


def test_terminal_states() -> None:
    assert not BracketState.ACTIVE.is_terminal
    assert not BracketState.RESOLVING.is_terminal
    for state in (
        BracketState.RESOLVED_PROFIT,
        BracketState.RESOLVED_LOSS,
        BracketState.RESOLVED_UNKNOWN,
        BracketState.EXPIRED,
    ):
        assert state.is_terminal


def test_monitor_options_defaults() -> None:
    options = MonitorOptions()

    assert options.interval_seconds == 60.0
    assert options.max_ticks == 360
    assert options.request_timeout_seconds == 15.0
    assert options.cancel_retry == RetryPolicy(attempts=2, backoff_seconds=0.5)


@pytest.mark.parametrize(
    "kwargs,message",
    [
        ({"interval_seconds": 0}, "interval_seconds"),
        ({"max_ticks": 0}, "max_ticks"),
        ({"request_timeout_seconds": 0}, "request_timeout_seconds must be greater"),
        ({"interval_seconds": 10, "request_timeout_seconds": 10}, "shorter than interval_seconds"),
        ({"cancel_retry": RetryPolicy(attempts=3)}, "at most one retry"),
    ],
)
def test_monitor_options_validation(kwargs: dict, message: str) -> None:
    with pytest.raises(MonitorConfigError, match=message):
        MonitorOptions(**kwargs)


def test_retry_policy_validation() -> None:
    with pytest.raises(MonitorConfigError):
        RetryPolicy(attempts=0)
    with pytest.raises(MonitorConfigError):
        RetryPolicy(attempts=1, backoff_seconds=-1)


def test_monitor_options_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BRACKET_POLL_SECS", "30")
    monkeypatch.setenv("BRACKET_MAX_TICKS", "10")
    monkeypatch.setenv("BRACKET_REQUEST_TIMEOUT_SECS", "5")
    monkeypatch.setenv("BRACKET_CANCEL_ATTEMPTS", "1")
    monkeypatch.setenv("BRACKET_CANCEL_BACKOFF_SECS", "0")

    options = MonitorOptions.from_env()

    assert options.interval_seconds == 30.0
    assert options.max_ticks == 10
    assert options.request_timeout_seconds == 5.0
    assert options.cancel_retry == RetryPolicy(attempts=1, backoff_seconds=0.0)
