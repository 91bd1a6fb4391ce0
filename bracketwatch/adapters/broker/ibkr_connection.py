from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from loguru import logger

from bracketwatch.adapters.broker._ib_client import IB

GatewayMessageHandler = Callable[[Optional[int], Optional[int], Optional[str], Optional[str]], None]

# Informational farm/connectivity codes that IB reports through the error callback.
_INFO_CODES = {2104, 2106, 2107, 2108, 2158}


@dataclass(frozen=True)
class IBKRConnectionConfig:
    host: str = "127.0.0.1"
    port: int = 7497
    client_id: int = 1001
    readonly: bool = False
    timeout: float = 5.0
    paper_only: bool = True
    paper_port: int = 7497
    live_port: int = 7496

    @classmethod
    def from_env(cls) -> "IBKRConnectionConfig":
        return cls(
            host=os.getenv("IB_HOST", "127.0.0.1"),
            port=int(os.getenv("IB_PORT", "7497")),
            client_id=int(os.getenv("IB_CLIENT_ID", "1001")),
            readonly=os.getenv("IB_READONLY", "0") == "1",
            timeout=float(os.getenv("IB_TIMEOUT", "5")),
            paper_only=os.getenv("PAPER_ONLY", "1") == "1",
            paper_port=int(os.getenv("IB_PAPER_PORT", "7497")),
            live_port=int(os.getenv("IB_LIVE_PORT", "7496")),
        )


class IBKRConnection:
    def __init__(self, config: IBKRConnectionConfig, ib: Optional[IB] = None) -> None:
        self._config = config
        self._ib = ib if ib is not None else IB()
        self._gateway_message_subscribers: list[GatewayMessageHandler] = []
        self._install_error_filter()

    @property
    def ib(self) -> IB:
        return self._ib

    @property
    def config(self) -> IBKRConnectionConfig:
        return self._config

    def is_connected(self) -> bool:
        return bool(self._ib.isConnected())

    def _assert_paper_mode(self, port: int) -> None:
        if self._config.paper_only and port != self._config.paper_port:
            raise RuntimeError("PAPER_ONLY=1 but IB port is not the paper port.")

    async def connect(
        self,
        *,
        mode: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        client_id: Optional[int] = None,
        readonly: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> IBKRConnectionConfig:
        new_host = host or self._config.host
        if mode == "paper":
            new_port = self._config.paper_port
        elif mode == "live":
            new_port = self._config.live_port
        elif mode:
            raise ValueError(f"unknown connection mode: {mode}")
        else:
            new_port = port or self._config.port
        new_client_id = client_id if client_id is not None else self._config.client_id
        new_readonly = readonly if readonly is not None else self._config.readonly
        new_timeout = timeout if timeout is not None else self._config.timeout

        self._assert_paper_mode(new_port)
        if self._ib.isConnected():
            logger.info("reconnecting: closing {}:{}", self._config.host, self._config.port)
            self._ib.disconnect()

        logger.info(
            "connecting to IBKR {}:{} client_id={} readonly={}",
            new_host,
            new_port,
            new_client_id,
            new_readonly,
        )
        try:
            await self._ib.connectAsync(
                new_host,
                new_port,
                clientId=new_client_id,
                timeout=new_timeout,
                readonly=new_readonly,
            )
        except Exception as exc:
            logger.error("IBKR connect to {}:{} failed: {}", new_host, new_port, exc)
            raise
        self._install_error_filter()

        self._config = replace(
            self._config,
            host=new_host,
            port=new_port,
            client_id=new_client_id,
            readonly=new_readonly,
            timeout=new_timeout,
        )
        logger.info("connected to IBKR {}:{}", new_host, new_port)
        return self._config

    def disconnect(self) -> None:
        if self._ib.isConnected():
            self._ib.disconnect()
            logger.info("disconnected from IBKR {}:{}", self._config.host, self._config.port)

    def status(self) -> dict[str, object]:
        return {
            "connected": self.is_connected(),
            "host": self._config.host,
            "port": self._config.port,
            "client_id": self._config.client_id,
            "readonly": self._config.readonly,
            "paper_only": self._config.paper_only,
        }

    def subscribe_gateway_messages(self, handler: GatewayMessageHandler) -> Callable[[], None]:
        self._gateway_message_subscribers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._gateway_message_subscribers:
                self._gateway_message_subscribers.remove(handler)

        return _unsubscribe

    def _install_error_filter(self) -> None:
        _silence_ib_logger()
        wrappers = []
        wrapper = getattr(self._ib, "wrapper", None)
        if wrapper is not None:
            wrappers.append(wrapper)
        client = getattr(self._ib, "client", None)
        client_wrapper = getattr(client, "wrapper", None) if client else None
        if client_wrapper is not None and client_wrapper not in wrappers:
            wrappers.append(client_wrapper)

        for wrapper in wrappers:
            current_error = getattr(wrapper, "error", None)
            if not callable(current_error):
                continue
            if getattr(current_error, "_bracketwatch_filtered", False):
                continue

            def _filtered_error(*args, _original=current_error, **kwargs) -> None:
                payload = _parse_gateway_error(args, kwargs)
                self._handle_gateway_message(payload)
                if _should_suppress_error(payload):
                    return
                _original(*args, **kwargs)

            _filtered_error._bracketwatch_filtered = True  # type: ignore[attr-defined]
            wrapper.error = _filtered_error

    def _handle_gateway_message(
        self,
        payload: Tuple[Optional[int], Optional[int], Optional[str], Optional[str]],
    ) -> None:
        req_id, code, message, advanced = payload
        if code in _INFO_CODES:
            logger.debug("IB gateway {}: {}", code, message)
        else:
            logger.warning("IB gateway error {} (req {}): {}", code, req_id, message or advanced)
        for handler in list(self._gateway_message_subscribers):
            try:
                handler(req_id, code, message, advanced)
            except Exception:
                logger.exception("gateway message subscriber failed")


def _should_suppress_error(
    payload: Tuple[Optional[int], Optional[int], Optional[str], Optional[str]],
) -> bool:
    _, code, message, _ = payload
    if code in _INFO_CODES:
        return True
    if code != 162:
        return False
    if not message:
        return True
    return "query cancelled" in message.lower()


def _silence_ib_logger() -> None:
    for name in ("ib_async", "ib_insync"):
        ib_logger = logging.getLogger(name)
        ib_logger.setLevel(logging.CRITICAL)
        ib_logger.propagate = False
        if not ib_logger.handlers:
            ib_logger.addHandler(logging.NullHandler())


def _parse_gateway_error(
    args: tuple[object, ...],
    kwargs: dict[str, object],
) -> Tuple[Optional[int], Optional[int], Optional[str], Optional[str]]:
    req_id: Optional[int] = None
    error_code: Optional[int] = None
    error_msg: Optional[str] = None
    advanced: Optional[str] = None

    if len(args) >= 3:
        req_id = _maybe_int(args[0])
        error_code = _maybe_int(args[1])
        error_msg = str(args[2]) if args[2] is not None else None
        if len(args) >= 4:
            advanced = str(args[3]) if args[3] is not None else None
    else:
        req_id = _maybe_int(kwargs.get("reqId"))
        error_code = _maybe_int(kwargs.get("errorCode"))
        raw_message = kwargs.get("errorString")
        if raw_message is None:
            raw_message = kwargs.get("errorMsg")
        error_msg = str(raw_message) if raw_message is not None else None
        if kwargs.get("advancedOrderRejectJson") is not None:
            advanced = str(kwargs.get("advancedOrderRejectJson"))

    return req_id, error_code, error_msg, advanced


def _maybe_int(value: object) -> Optional[int]:
    try:
        return int(value) if value is not None else None  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
