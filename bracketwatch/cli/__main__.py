import asyncio
import os
import sys

from dotenv import load_dotenv
from loguru import logger

from bracketwatch.adapters.broker.ibkr_connection import (
    IBKRConnection,
    IBKRConnectionConfig,
)
from bracketwatch.adapters.broker.ibkr_order_port import IBKROrderPort
from bracketwatch.adapters.broker.ibkr_positions_port import IBKRPositionsPort
from bracketwatch.adapters.eventbus.in_process import InProcessEventBus
from bracketwatch.adapters.logging.jsonl_logger import JsonlEventLogger
from bracketwatch.cli.event_printer import make_prompting_event_printer
from bracketwatch.cli.repl import REPL
from bracketwatch.core.brackets.models import MonitorOptions
from bracketwatch.core.orders.service import OrderService
from bracketwatch.core.positions.service import PositionsService


def _configure_logging() -> None:
    logger.remove()
    logger.add(sys.stderr, level=os.getenv("LOG_LEVEL", "INFO"))


async def _async_main() -> None:
    load_dotenv()
    _configure_logging()
    config = IBKRConnectionConfig.from_env()
    monitor_options = MonitorOptions.from_env()
    bus = InProcessEventBus()
    prompt = "bracketwatch> "
    bus.subscribe(object, make_prompting_event_printer(prompt))
    log_path = os.getenv("BRACKETWATCH_EVENT_LOG_PATH", "journal/events.jsonl")
    if log_path:
        bus.subscribe(object, JsonlEventLogger(log_path).handle)
    connection = IBKRConnection(config)
    order_service = OrderService(IBKROrderPort(connection), event_bus=bus)
    positions_service = PositionsService(IBKRPositionsPort(connection))
    repl = REPL(
        connection,
        order_service,
        positions_service,
        event_bus=bus,
        prompt=prompt,
        monitor_options=monitor_options,
        default_account=os.getenv("IB_ACCOUNT"),
    )
    try:
        await repl.run()
    finally:
        connection.disconnect()


def main() -> None:
    try:
        asyncio.run(_async_main())
    except KeyboardInterrupt:
        print("\nInterrupted; monitoring stopped, orders left live at the broker.")


if __name__ == "__main__":
    main()
