from __future__ import annotations

import os
import sys
from datetime import datetime
from typing import Optional

try:
    import readline
except ImportError:
    readline = None

from bracketwatch.core.brackets.events import (
    BracketMonitorStarted,
    BracketMonitorStopped,
    BracketResolved,
    BracketTickFailed,
    BracketTickObserved,
    BracketTransitioned,
)
from bracketwatch.core.brackets.models import BracketState
from bracketwatch.core.orders.events import OrderAccepted, OrderCancelRequested
from bracketwatch.core.orders.models import OrderStatus

_PROMPT_PREFIX: Optional[str] = None
_SHOW_TICKS = os.getenv("BRACKETWATCH_CLI_SHOW_TICKS", "1").strip().lower() in {
    "1",
    "true",
    "yes",
    "y",
    "on",
}
_RESOLUTION_LABELS = {
    BracketState.RESOLVED_PROFIT: "take-profit hit",
    BracketState.RESOLVED_LOSS: "stop-loss hit",
    BracketState.RESOLVED_UNKNOWN: "outcome unknown",
    BracketState.EXPIRED: "monitoring window expired",
}


def print_event(event: object, *, show_ticks: Optional[bool] = None) -> bool:
    if isinstance(event, OrderAccepted):
        spec = event.spec
        price = spec.limit_price if spec.limit_price is not None else spec.stop_price
        price_part = f" @ {_fmt_price(price)}" if price is not None else ""
        _print_line(
            event.timestamp,
            "OrderAccepted",
            f"{spec.side.value} {spec.qty} {spec.symbol} {spec.kind.value}{price_part} "
            f"id={event.order_id or '-'} status={event.status.value}",
        )
        return True
    if isinstance(event, OrderCancelRequested):
        status = event.status.value if event.status else "-"
        _print_line(event.timestamp, "CancelRequested", f"id={event.order_id} status={status}")
        return True
    if isinstance(event, BracketMonitorStarted):
        _print_line(
            event.timestamp,
            "MonitorStarted",
            f"session={event.session_id} brackets={','.join(event.bracket_ids)} "
            f"every={event.interval_seconds:g}s max_ticks={event.max_ticks}",
        )
        return True
    if isinstance(event, BracketTickObserved):
        if not (_SHOW_TICKS if show_ticks is None else show_ticks):
            return False
        _print_line(
            event.timestamp,
            "Tick",
            f"{event.tick}/{event.max_ticks} {event.symbol} [{event.bracket_id}] "
            f"tp={_fmt_status(event.protective_status)} sl={_fmt_status(event.stop_status)}",
        )
        return True
    if isinstance(event, BracketTickFailed):
        _print_line(
            event.timestamp,
            "TickFailed",
            f"session={event.session_id} tick={event.tick} {event.error_type}: {event.message}",
        )
        return True
    if isinstance(event, BracketTransitioned):
        if event.to_state != BracketState.RESOLVING:
            return False
        _print_line(
            event.timestamp,
            "Resolving",
            f"{event.symbol} [{event.bracket_id}] {event.reason}; cancelling sibling",
        )
        return True
    if isinstance(event, BracketResolved):
        label = _RESOLUTION_LABELS.get(event.state, event.state.value)
        parts = [f"{event.symbol} [{event.bracket_id}] {label} ({event.reason})"]
        if event.estimated_pnl is not None:
            parts.append(f"pnl~{event.estimated_pnl:+.2f}")
        if event.cancelled_order_id:
            parts.append(f"cancelled={event.cancelled_order_id}")
        if event.cancellation_failed:
            parts.append(f"CANCEL FAILED: {event.cancellation_error}; check the order manually")
        _print_line(event.timestamp, "BracketResolved", " ".join(parts))
        return True
    if isinstance(event, BracketMonitorStopped):
        suffix = ""
        if event.unresolved_bracket_ids:
            suffix = f" unwatched={','.join(event.unresolved_bracket_ids)} (orders left live)"
        _print_line(
            event.timestamp,
            "MonitorStopped",
            f"session={event.session_id} reason={event.reason} ticks={event.ticks}{suffix}",
        )
        return True
    return False


def make_prompting_event_printer(prompt: str):
    # Event lines carry no prompt prefix; the prompt is redrawn below.
    _set_prompt_prefix("")

    def _handler(event: object) -> None:
        buffer = ""
        if readline is not None:
            buffer = readline.get_line_buffer()
            sys.stdout.write("\r\x1b[2K")
            sys.stdout.flush()
        printed = print_event(event)
        if readline is not None:
            sys.stdout.write(prompt + buffer)
            sys.stdout.flush()
            return
        if printed:
            print(prompt, end="", flush=True)

    return _handler


def _set_prompt_prefix(prompt: str) -> None:
    global _PROMPT_PREFIX
    _PROMPT_PREFIX = prompt.strip()


def _print_line(timestamp: Optional[datetime], label: str, message: str) -> None:
    prefix = f"{_PROMPT_PREFIX} " if _PROMPT_PREFIX else ""
    if timestamp:
        print(f"{prefix}[{_format_time(timestamp)}] {label}: {message}")
    else:
        print(f"{prefix}{label}: {message}")


def _format_time(timestamp: datetime) -> str:
    return timestamp.astimezone().strftime("%H:%M:%S.%f")[:-4]


def _fmt_status(status: Optional[OrderStatus]) -> str:
    if status is None:
        return "missing"
    return status.value


def _fmt_price(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:g}"
