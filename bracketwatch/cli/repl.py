from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

try:
    import readline
except ImportError:
    readline = None

from loguru import logger

from bracketwatch.adapters.broker.ibkr_connection import IBKRConnection
from bracketwatch.core.brackets.discovery import discover_brackets
from bracketwatch.core.brackets.models import (
    Bracket,
    BracketValidationError,
    MonitorConfigError,
    MonitorOptions,
    PositionSide,
)
from bracketwatch.core.brackets.monitor import MonitorHandle, start_bracket_monitor
from bracketwatch.core.brackets.placement import (
    DEFAULT_STOP_LOSS_PCT,
    DEFAULT_TAKE_PROFIT_PCT,
    BracketPlacementError,
    BracketPlacementSpec,
    place_bracket,
)
from bracketwatch.core.orders.errors import GatewayError
from bracketwatch.core.orders.models import (
    OrderCancelSpec,
    OrderKind,
    OrderSide,
    OrderSnapshot,
    OrderSpec,
)
from bracketwatch.core.orders.ports import EventBus
from bracketwatch.core.orders.service import OrderService, OrderValidationError
from bracketwatch.core.positions.models import PositionSnapshot
from bracketwatch.core.positions.risk import (
    PositionSizingError,
    closing_order,
    emergency_close,
    size_position,
)
from bracketwatch.core.positions.service import PositionsService

CommandHandler = Callable[[list[str], dict[str, str]], Awaitable[None]]

_ORDER_USAGE = (
    "buy|sell SYMBOL QTY [limit=...] [stop=...] [tif=DAY] "
    "[outside_rth=true|false] [account=...] [client_tag=...]"
)
_BRACKET_USAGE = (
    "bracket SYMBOL QTY [side=long|short] [entry=market|limit|none] [limit=...] [price=...] "
    "[tp=...] [sl=...] [tp_pct=0.75] [sl_pct=0.35] [wait=true|false] [monitor=true|false] "
    "[interval=...] [max_ticks=...]"
)
_MONITOR_USAGE = (
    "monitor SYMBOL QTY tp_id=... sl_id=... [side=long|short] [entry_price=...] "
    "[tp=...] [sl=...] [interval=...] [max_ticks=...]"
)


@dataclass(frozen=True)
class CommandSpec:
    name: str
    handler: CommandHandler
    help: str
    usage: str
    aliases: tuple[str, ...] = ()


class REPL:
    def __init__(
        self,
        connection: IBKRConnection,
        order_service: Optional[OrderService] = None,
        positions_service: Optional[PositionsService] = None,
        event_bus: Optional[EventBus] = None,
        *,
        prompt: str = "bracketwatch> ",
        monitor_options: Optional[MonitorOptions] = None,
        default_account: Optional[str] = None,
    ) -> None:
        self._connection = connection
        self._order_service = order_service
        self._positions_service = positions_service
        self._event_bus = event_bus
        self._prompt = prompt
        self._monitor_options = monitor_options or MonitorOptions()
        self._default_account = default_account.strip() if default_account else None
        self._commands: dict[str, CommandSpec] = {}
        self._aliases: dict[str, str] = {}
        self._sessions: dict[str, MonitorHandle] = {}
        self._should_exit = False
        self._completion_matches: list[str] = []
        self._register_commands()
        self._setup_readline()

    @property
    def sessions(self) -> dict[str, MonitorHandle]:
        return dict(self._sessions)

    async def run(self) -> None:
        print("bracketwatch CLI (type 'help' to list commands).")
        try:
            while not self._should_exit:
                try:
                    line = await asyncio.to_thread(input, self._prompt)
                except EOFError:
                    print()
                    break
                await self.execute(line)
        finally:
            await self._stop_all_sessions()

    async def execute(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        cmd_name, args, kwargs = self._parse_line(line)
        if cmd_name is None:
            return
        spec = self._resolve_command(cmd_name)
        if not spec:
            print(f"Unknown command: {cmd_name}. Type 'help' to list commands.")
            return
        try:
            await spec.handler(args, kwargs)
        except Exception as exc:
            logger.opt(exception=exc).debug("command {!r} failed", line)
            _print_exception("Command error", exc)

    def _register_commands(self) -> None:
        self._register(
            CommandSpec(
                name="help",
                handler=self._cmd_help,
                help="Show available commands or help for a command.",
                usage="help [command]",
                aliases=("?",),
            )
        )
        self._register(
            CommandSpec(
                name="connect",
                handler=self._cmd_connect,
                help="Connect to IBKR (paper or live).",
                usage="connect [paper|live] [host=...] [port=...] [client_id=...] [readonly=true|false] [timeout=...]",
            )
        )
        self._register(
            CommandSpec(
                name="disconnect",
                handler=self._cmd_disconnect,
                help="Disconnect from IBKR.",
                usage="disconnect",
            )
        )
        self._register(
            CommandSpec(
                name="status",
                handler=self._cmd_status,
                help="Show connection status.",
                usage="status",
            )
        )
        self._register(
            CommandSpec(
                name="buy",
                handler=self._cmd_buy,
                help="Submit a buy order (market, limit, stop or stop-limit).",
                usage=_ORDER_USAGE,
            )
        )
        self._register(
            CommandSpec(
                name="sell",
                handler=self._cmd_sell,
                help="Submit a sell order (market, limit, stop or stop-limit).",
                usage=_ORDER_USAGE,
            )
        )
        self._register(
            CommandSpec(
                name="bracket",
                handler=self._cmd_bracket,
                help="Place entry + take-profit + stop-loss and monitor the pair.",
                usage=_BRACKET_USAGE,
            )
        )
        self._register(
            CommandSpec(
                name="monitor",
                handler=self._cmd_monitor,
                help="Monitor an existing take-profit / stop-loss order pair.",
                usage=_MONITOR_USAGE,
            )
        )
        self._register(
            CommandSpec(
                name="watch",
                handler=self._cmd_watch,
                help="Discover live TP/SL pairs at the broker and monitor them.",
                usage="watch [SYMBOL] [interval=...] [max_ticks=...]",
            )
        )
        self._register(
            CommandSpec(
                name="monitors",
                handler=self._cmd_monitors,
                help="List monitor sessions and their brackets.",
                usage="monitors",
                aliases=("sessions",),
            )
        )
        self._register(
            CommandSpec(
                name="stop",
                handler=self._cmd_stop,
                help="Stop a monitor session (orders stay live at the broker).",
                usage="stop SESSION_ID|all",
            )
        )
        self._register(
            CommandSpec(
                name="orders",
                handler=self._cmd_orders,
                help="List broker orders.",
                usage="orders [pending]",
            )
        )
        self._register(
            CommandSpec(
                name="cancel",
                handler=self._cmd_cancel,
                help="Cancel an order by id, or every pending order.",
                usage="cancel ORDER_ID|all",
            )
        )
        self._register(
            CommandSpec(
                name="positions",
                handler=self._cmd_positions,
                help="List open positions.",
                usage="positions [account=...]",
            )
        )
        self._register(
            CommandSpec(
                name="stop-loss",
                handler=self._cmd_stop_loss,
                help="Place a STOP order that closes the whole position in SYMBOL.",
                usage="stop-loss SYMBOL PRICE [account=...]",
                aliases=("sl",),
            )
        )
        self._register(
            CommandSpec(
                name="position-size",
                handler=self._cmd_position_size,
                help="Risk-based share count for an entry and stop price.",
                usage="position-size ACCOUNT_SIZE RISK_PCT ENTRY STOP",
                aliases=("size",),
            )
        )
        self._register(
            CommandSpec(
                name="emergency-close",
                handler=self._cmd_emergency_close,
                help="Stop monitors, cancel every pending order and market-close all positions.",
                usage="emergency-close [account=...]",
                aliases=("flatten",),
            )
        )
        self._register(
            CommandSpec(
                name="quit",
                handler=self._cmd_quit,
                help="Stop all monitors and exit.",
                usage="quit",
                aliases=("exit", "q"),
            )
        )

    def _register(self, spec: CommandSpec) -> None:
        self._commands[spec.name] = spec
        for alias in spec.aliases:
            self._aliases[alias] = spec.name

    def _setup_readline(self) -> None:
        if readline is None:
            return
        readline.set_completer(self._complete)
        readline.parse_and_bind("tab: complete")

    def _complete(self, text: str, state: int) -> Optional[str]:
        if state == 0:
            self._completion_matches = sorted(
                name for name in (*self._commands, *self._aliases) if name.startswith(text)
            )
        if state < len(self._completion_matches):
            return self._completion_matches[state]
        return None

    def _resolve_command(self, name: str) -> Optional[CommandSpec]:
        if name in self._commands:
            return self._commands[name]
        target = self._aliases.get(name)
        if target:
            return self._commands.get(target)
        return None

    def _parse_line(self, line: str) -> tuple[Optional[str], list[str], dict[str, str]]:
        try:
            tokens = shlex.split(line)
        except ValueError as exc:
            print(f"Parse error: {exc}")
            return None, [], {}
        if not tokens:
            return None, [], {}
        cmd_name = tokens[0].lower()
        args: list[str] = []
        kwargs: dict[str, str] = {}
        for token in tokens[1:]:
            if token.startswith("--") and "=" in token:
                token = token[2:]
            if "=" in token:
                key, value = token.split("=", 1)
                kwargs[key.strip().lower().replace("-", "_")] = value
            else:
                args.append(token)
        return cmd_name, args, kwargs

    async def _cmd_help(self, args: list[str], _kwargs: dict[str, str]) -> None:
        if args:
            name = args[0].lower()
            spec = self._resolve_command(name)
            if not spec:
                print(f"No such command: {name}")
                return
            print(f"{spec.name}: {spec.help}")
            print(f"Usage: {spec.usage}")
            return

        specs = sorted(self._commands.values(), key=lambda s: s.name)
        for spec in specs:
            print(f"{spec.name:<10} {spec.help}")

    async def _cmd_connect(self, args: list[str], kwargs: dict[str, str]) -> None:
        mode = None
        if args:
            mode = args[0].lower()
            if mode not in {"paper", "live"}:
                print(f"Usage: {self._commands['connect'].usage}")
                return

        overrides: dict[str, object] = {}
        if "host" in kwargs:
            overrides["host"] = kwargs["host"]
        if "port" in kwargs:
            overrides["port"] = int(kwargs["port"])
        if "client_id" in kwargs:
            overrides["client_id"] = int(kwargs["client_id"])
        if "readonly" in kwargs:
            overrides["readonly"] = _parse_bool(kwargs["readonly"])
        if "timeout" in kwargs:
            overrides["timeout"] = float(kwargs["timeout"])

        cfg = await self._connection.connect(mode=mode, **overrides)
        print(
            "Connected: "
            f"{cfg.host}:{cfg.port} client_id={cfg.client_id} readonly={cfg.readonly}"
        )

    async def _cmd_disconnect(self, _args: list[str], _kwargs: dict[str, str]) -> None:
        if self._running_sessions():
            print("Monitors are still running; they will log failed ticks until reconnected.")
        self._connection.disconnect()
        print("Disconnected.")

    async def _cmd_status(self, _args: list[str], _kwargs: dict[str, str]) -> None:
        status = self._connection.status()
        state = "connected" if status["connected"] else "disconnected"
        print(
            f"{state} - {status['host']}:{status['port']} "
            f"client_id={status['client_id']} readonly={status['readonly']} "
            f"monitors={len(self._running_sessions())}"
        )

    async def _cmd_buy(self, args: list[str], kwargs: dict[str, str]) -> None:
        await self._submit_order(OrderSide.BUY, args, kwargs)

    async def _cmd_sell(self, args: list[str], kwargs: dict[str, str]) -> None:
        await self._submit_order(OrderSide.SELL, args, kwargs)

    async def _cmd_bracket(self, args: list[str], kwargs: dict[str, str]) -> None:
        if not self._order_service:
            print("Order service not configured.")
            return
        if not self._require_connection("placing a bracket"):
            return
        parsed = _parse_symbol_qty(args, kwargs)
        if parsed is None:
            print(f"Usage: {_BRACKET_USAGE}")
            return
        symbol, qty = parsed
        side = _parse_position_side(kwargs.get("side", "long"))
        limit_price = _coerce_float(kwargs.get("limit"))
        entry_raw = (kwargs.get("entry") or ("limit" if limit_price is not None else "market")).lower()
        entry_kinds = {"market": OrderKind.MARKET, "limit": OrderKind.LIMIT, "none": None}
        if entry_raw not in entry_kinds:
            print("entry must be market, limit or none")
            return
        options = self._options_from_kwargs(kwargs)

        spec = BracketPlacementSpec(
            symbol=symbol,
            qty=qty,
            side=side,
            entry_kind=entry_kinds[entry_raw],
            entry_limit_price=limit_price,
            entry_price=_coerce_float(kwargs.get("price")),
            take_profit_price=_coerce_float(kwargs.get("tp")),
            stop_price=_coerce_float(kwargs.get("sl")),
            take_profit_pct=_coerce_float(kwargs.get("tp_pct")) or DEFAULT_TAKE_PROFIT_PCT,
            stop_loss_pct=_coerce_float(kwargs.get("sl_pct")) or DEFAULT_STOP_LOSS_PCT,
            wait_for_fill=_parse_bool(kwargs.get("wait", "true")),
            tif=kwargs.get("tif") or "DAY",
            outside_rth=_parse_bool(kwargs.get("outside_rth", "false")),
            account=kwargs.get("account") or self._default_account,
            client_tag=kwargs.get("client_tag"),
        )
        try:
            bracket = await place_bracket(self._order_service, spec)
        except (BracketValidationError, OrderValidationError) as exc:
            print(f"Bracket rejected: {exc}")
            return
        except BracketPlacementError as exc:
            print(f"Bracket failed: {exc}")
            if exc.orphan_order_ids:
                print(
                    "Unpaired exit orders left at the broker: "
                    + ", ".join(exc.orphan_order_ids)
                    + " (use `cancel ORDER_ID` to remove them)"
                )
            return
        print(
            f"Bracket {bracket.bracket_id}: {bracket.side.value} {bracket.qty} {bracket.symbol} "
            f"entry={bracket.entry_order_id or '-'} @ {_format_number(bracket.entry_price)} "
            f"tp={bracket.protective_order_id} @ {_format_number(bracket.take_profit_price)} "
            f"sl={bracket.stop_order_id} @ {_format_number(bracket.stop_price)}"
        )
        if not _parse_bool(kwargs.get("monitor", "true")):
            return
        self._start_session([bracket], options)

    async def _cmd_monitor(self, args: list[str], kwargs: dict[str, str]) -> None:
        if not self._order_service:
            print("Order service not configured.")
            return
        parsed = _parse_symbol_qty(args, kwargs)
        take_profit_id = kwargs.get("tp_id")
        stop_id = kwargs.get("sl_id")
        if parsed is None or not take_profit_id or not stop_id:
            print(f"Usage: {_MONITOR_USAGE}")
            return
        symbol, qty = parsed
        options = self._options_from_kwargs(kwargs)
        try:
            bracket = Bracket(
                protective_order_id=take_profit_id,
                stop_order_id=stop_id,
                symbol=symbol,
                qty=qty,
                side=_parse_position_side(kwargs.get("side", "long")),
                entry_price=_coerce_float(kwargs.get("entry_price")),
                take_profit_price=_coerce_float(kwargs.get("tp")),
                stop_price=_coerce_float(kwargs.get("sl")),
            )
        except BracketValidationError as exc:
            print(f"Bracket rejected: {exc}")
            return
        self._start_session([bracket], options)

    async def _cmd_watch(self, args: list[str], kwargs: dict[str, str]) -> None:
        if not self._order_service:
            print("Order service not configured.")
            return
        if not self._require_connection("discovering brackets"):
            return
        options = self._options_from_kwargs(kwargs)
        symbol = args[0] if args else kwargs.get("symbol")
        orders = await self._order_service.list_orders()
        report = discover_brackets(orders, symbol=symbol, exclude_order_ids=self._monitored_order_ids())
        for key, reason in report.unmatched.items():
            print(f"Skipped {key}: {reason}")
        if not report.brackets:
            print("No take-profit / stop-loss pairs found.")
            return
        for bracket in report.brackets:
            print(
                f"Found {bracket.side.value} {bracket.qty} {bracket.symbol}: "
                f"tp={bracket.protective_order_id} @ {_format_number(bracket.take_profit_price)} "
                f"sl={bracket.stop_order_id} @ {_format_number(bracket.stop_price)}"
            )
        self._start_session(report.brackets, options)

    async def _cmd_monitors(self, _args: list[str], _kwargs: dict[str, str]) -> None:
        if not self._sessions:
            print("No monitor sessions.")
            return
        rows: list[list[str]] = []
        for session_id, handle in self._sessions.items():
            monitor = handle.monitor
            for bracket in handle.brackets:
                rows.append(
                    [
                        session_id,
                        "running" if handle.running else "stopped",
                        f"{monitor.tick_count}/{monitor.options.max_ticks}",
                        bracket.bracket_id,
                        bracket.symbol,
                        bracket.side.value,
                        str(bracket.qty),
                        bracket.protective_order_id,
                        bracket.stop_order_id,
                        bracket.state.value,
                    ]
                )
        headers = ["session", "state", "ticks", "bracket", "symbol", "side", "qty", "tp_id", "sl_id", "bracket_state"]
        for line in _format_simple_table(headers, rows):
            print(line)

    async def _cmd_stop(self, args: list[str], _kwargs: dict[str, str]) -> None:
        if not args:
            print(f"Usage: {self._commands['stop'].usage}")
            return
        target = args[0]
        if target.lower() == "all":
            stopped = await self._stop_all_sessions()
            print(f"Stopped {stopped} monitor session(s); orders left untouched.")
            return
        handle = self._sessions.get(target)
        if handle is None:
            print(f"No monitor session {target}.")
            return
        handle.stop()
        await handle.wait()
        print(f"Stopped monitor {target}; orders left untouched.")

    async def _cmd_orders(self, args: list[str], _kwargs: dict[str, str]) -> None:
        if not self._order_service:
            print("Order service not configured.")
            return
        if not self._require_connection("listing orders"):
            return
        pending_only = bool(args) and args[0].lower() in {"pending", "open", "live"}
        orders = await self._order_service.list_orders()
        if pending_only:
            orders = [order for order in orders if order.status.is_live]
        if not orders:
            print("No orders found.")
            return
        for line in _format_orders_table(orders):
            print(line)

    async def _cmd_cancel(self, args: list[str], _kwargs: dict[str, str]) -> None:
        if not self._order_service:
            print("Order service not configured.")
            return
        if not args:
            print(f"Usage: {self._commands['cancel'].usage}")
            return
        if not self._require_connection("cancelling orders"):
            return
        if args[0].lower() == "all":
            report = await self._order_service.cancel_all_pending()
            print(f"Cancelled {len(report.cancelled)} of {report.attempted} pending order(s).")
            for order_id, reason in report.failed.items():
                print(f"  {order_id}: {reason}")
            return
        try:
            ack = await self._order_service.cancel_order(OrderCancelSpec(order_id=args[0]))
        except OrderValidationError as exc:
            print(f"Cancel rejected: {exc}")
            return
        except GatewayError as exc:
            print(f"Cancel failed: {exc}")
            return
        print(f"Cancel requested: order_id={ack.order_id} status={ack.status.value}")

    async def _cmd_positions(self, _args: list[str], kwargs: dict[str, str]) -> None:
        if not self._positions_service:
            print("Positions service not configured.")
            return
        if not self._require_connection("requesting positions"):
            return
        account = kwargs.get("account") or self._default_account
        positions = await self._positions_service.list_positions(account=account)
        if not positions:
            print("No positions found.")
            return
        for line in _format_positions_table(positions):
            print(line)

    async def _cmd_stop_loss(self, args: list[str], kwargs: dict[str, str]) -> None:
        if not self._order_service or not self._positions_service:
            print("Order and positions services not configured.")
            return
        stop_price = _coerce_float(args[1]) if len(args) > 1 else None
        if not args or stop_price is None:
            print(f"Usage: {self._commands['stop-loss'].usage}")
            return
        if not self._require_connection("placing a stop-loss"):
            return
        account = kwargs.get("account") or self._default_account
        position = await self._positions_service.find_position(args[0], account=account)
        if position is None:
            print(f"No position found for {args[0].upper()}.")
            return
        try:
            spec = closing_order(position, kind=OrderKind.STOP, stop_price=stop_price, account=account)
            ack = await self._order_service.submit_order(spec)
        except (OrderValidationError, PositionSizingError) as exc:
            print(f"Stop-loss rejected: {exc}")
            return
        except GatewayError as exc:
            print(f"Stop-loss failed: {exc}")
            return
        print(
            f"Stop-loss placed: {spec.side.value} {spec.qty} {spec.symbol} "
            f"stop={_format_number(stop_price)} order_id={ack.order_id}"
        )

    async def _cmd_position_size(self, args: list[str], _kwargs: dict[str, str]) -> None:
        values = [_coerce_float(arg) for arg in args[:4]]
        if len(values) < 4 or any(value is None for value in values):
            print(f"Usage: {self._commands['position-size'].usage}")
            return
        account_size, risk_pct, entry, stop = values
        side = OrderSide.SELL if stop > entry else OrderSide.BUY
        try:
            size = size_position(account_size, risk_pct, entry, stop, entry_side=side)
        except PositionSizingError as exc:
            print(f"Position size: {exc}")
            return
        print(f"Max shares:     {size.shares} ({'short' if side == OrderSide.SELL else 'long'})")
        print(f"Position value: {_format_number(size.position_value, precision=2)}")
        print(f"Risk amount:    {_format_number(size.risk_amount, precision=2)}")
        print(f"Risk per share: {_format_number(size.risk_per_share)}")

    async def _cmd_emergency_close(self, _args: list[str], kwargs: dict[str, str]) -> None:
        if not self._order_service or not self._positions_service:
            print("Order and positions services not configured.")
            return
        if not self._require_connection("closing positions"):
            return
        stopped = await self._stop_all_sessions()
        if stopped:
            print(f"Stopped {stopped} monitor session(s).")
        account = kwargs.get("account") or self._default_account
        report = await emergency_close(self._order_service, self._positions_service, account=account)
        print(
            f"Cancelled {len(report.cancel_report.cancelled)} of "
            f"{report.cancel_report.attempted} pending order(s)."
        )
        for order_id, reason in report.cancel_report.failed.items():
            print(f"  cancel {order_id}: {reason}")
        for symbol, order_id in report.closed.items():
            print(f"Closed {symbol}: order_id={order_id}")
        for symbol, reason in report.failed.items():
            print(f"Failed to close {symbol}: {reason}")
        if not report.closed and not report.failed:
            print("No open positions to close.")

    async def _cmd_quit(self, _args: list[str], _kwargs: dict[str, str]) -> None:
        await self._stop_all_sessions()
        self._should_exit = True

    async def _submit_order(
        self,
        side: OrderSide,
        args: list[str],
        kwargs: dict[str, str],
    ) -> None:
        if not self._order_service:
            print("Order service not configured.")
            return
        parsed = _parse_symbol_qty(args, kwargs)
        if parsed is None:
            print(f"Usage: {_ORDER_USAGE}")
            return
        symbol, qty = parsed
        limit_price = _coerce_float(kwargs.get("limit"))
        stop_price = _coerce_float(kwargs.get("stop"))
        if limit_price is not None and stop_price is not None:
            kind = OrderKind.STOP_LIMIT
        elif stop_price is not None:
            kind = OrderKind.STOP
        elif limit_price is not None:
            kind = OrderKind.LIMIT
        else:
            kind = OrderKind.MARKET

        spec = OrderSpec(
            symbol=symbol,
            qty=qty,
            side=side,
            kind=kind,
            limit_price=limit_price,
            stop_price=stop_price,
            tif=kwargs.get("tif") or "DAY",
            outside_rth=_parse_bool(kwargs.get("outside_rth", "false")),
            account=kwargs.get("account") or self._default_account,
            client_tag=kwargs.get("client_tag"),
        )
        try:
            ack = await self._order_service.submit_order(spec)
        except OrderValidationError as exc:
            print(f"Order rejected: {exc}")
            return
        except GatewayError as exc:
            print(f"Order failed: {exc}")
            return
        print(f"Order submitted: order_id={ack.order_id} status={ack.status.value}")

    def _start_session(self, brackets: list[Bracket], options: MonitorOptions) -> Optional[MonitorHandle]:
        if not self._order_service:
            return None
        watched = self._monitored_order_ids()
        overlap = sorted(order_id for bracket in brackets for order_id in bracket.order_ids if order_id in watched)
        if overlap:
            print(f"Monitor rejected: order(s) {', '.join(overlap)} already watched by a running session.")
            return None
        try:
            handle = start_bracket_monitor(
                brackets,
                self._order_service,
                options,
                event_bus=self._event_bus,
            )
        except MonitorConfigError as exc:
            print(f"Monitor rejected: {exc}")
            return None
        self._sessions[handle.session_id] = handle
        print(
            f"Monitoring {len(brackets)} bracket(s) as session {handle.session_id} "
            f"every {options.interval_seconds:g}s for up to {options.max_ticks} ticks."
        )
        return handle

    async def _stop_all_sessions(self) -> int:
        running = self._running_sessions()
        for handle in running:
            handle.stop()
        for handle in running:
            await handle.wait()
        return len(running)

    def _running_sessions(self) -> list[MonitorHandle]:
        return [handle for handle in self._sessions.values() if handle.running]

    def _monitored_order_ids(self) -> set[str]:
        order_ids: set[str] = set()
        for handle in self._running_sessions():
            for bracket in handle.brackets:
                if not bracket.is_terminal:
                    order_ids.update(bracket.order_ids)
        return order_ids

    def _options_from_kwargs(self, kwargs: dict[str, str]) -> MonitorOptions:
        interval = _coerce_float(kwargs.get("interval"))
        max_ticks = _coerce_int(kwargs.get("max_ticks"))
        options = self._monitor_options
        if interval is None and max_ticks is None:
            return options
        interval = interval if interval is not None else options.interval_seconds
        timeout = min(options.request_timeout_seconds, interval / 2)
        return MonitorOptions(
            interval_seconds=interval,
            max_ticks=max_ticks if max_ticks is not None else options.max_ticks,
            request_timeout_seconds=timeout,
            cancel_retry=options.cancel_retry,
        )

    def _require_connection(self, action: str) -> bool:
        if self._connection.status().get("connected"):
            return True
        print(f"Not connected. Use `connect` before {action}.")
        return False


def _parse_symbol_qty(args: list[str], kwargs: dict[str, str]) -> Optional[tuple[str, int]]:
    symbol = args[0] if args else kwargs.get("symbol")
    qty_raw = args[1] if len(args) > 1 else kwargs.get("qty")
    if not symbol or qty_raw is None:
        return None
    qty = _coerce_int(qty_raw)
    if qty is None:
        return None
    return symbol.strip().upper(), qty


def _parse_position_side(value: str) -> PositionSide:
    normalized = value.strip().upper()
    if normalized in {"BUY", "LONG"}:
        return PositionSide.LONG
    if normalized in {"SELL", "SHORT"}:
        return PositionSide.SHORT
    raise BracketValidationError(f"invalid side: {value}")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _coerce_int(value: object) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _coerce_float(value: object) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _format_orders_table(orders: list[OrderSnapshot]) -> list[str]:
    headers = ["order_id", "symbol", "side", "kind", "qty", "filled", "limit", "stop", "avg_fill", "status"]
    rows = [
        [
            order.order_id,
            order.symbol or "-",
            order.side.value if order.side else "-",
            order.kind.value if order.kind else "-",
            _format_number(order.qty),
            _format_number(order.filled_qty),
            _format_number(order.limit_price),
            _format_number(order.stop_price),
            _format_number(order.avg_fill_price),
            order.status.value,
        ]
        for order in orders
    ]
    return _format_simple_table(headers, rows)


def _format_positions_table(positions: list[PositionSnapshot]) -> list[str]:
    headers = ["account", "symbol", "qty", "avg_price", "mkt_price", "unrealized"]
    rows = [
        [
            pos.account or "-",
            pos.symbol,
            _format_number(pos.net_qty),
            _format_number(pos.avg_price),
            _format_number(pos.market_price),
            _format_number(pos.unrealized_pnl, precision=2),
        ]
        for pos in sorted(positions, key=lambda item: (item.account or "", item.symbol))
    ]
    return _format_simple_table(headers, rows)


def _format_number(value: Optional[float], *, precision: int = 4) -> str:
    if value is None:
        return "-"
    try:
        formatted = f"{float(value):.{precision}f}"
    except (TypeError, ValueError):
        return "-"
    formatted = formatted.rstrip("0").rstrip(".")
    return formatted if formatted else "0"


def _format_simple_table(headers: list[str], rows: list[list[str]]) -> list[str]:
    if not rows:
        return []
    widths = [len(label) for label in headers]
    for row in rows:
        for idx, value in enumerate(row):
            widths[idx] = max(widths[idx], len(value))
    header = " | ".join(label.ljust(widths[idx]) for idx, label in enumerate(headers))
    divider = "-+-".join("-" * width for width in widths)
    lines = [header, divider]
    for row in rows:
        lines.append(" | ".join(value.ljust(widths[idx]) for idx, value in enumerate(row)))
    return lines


def _print_exception(prefix: str, exc: BaseException) -> None:
    error_type = type(exc).__name__
    lines = str(exc).splitlines()
    message = lines[0].strip() if lines else ""
    if len(message) > 200:
        message = message[:197].rstrip() + "..."
    summary = f"{error_type}: {message}" if message else error_type
    print(f"{prefix}: {summary}")
