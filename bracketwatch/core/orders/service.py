from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional, Type, TypeVar

from loguru import logger

from bracketwatch.core.orders.errors import GatewayError
from bracketwatch.core.orders.events import OrderAccepted, OrderCancelRequested, OrderIntent
from bracketwatch.core.orders.models import (
    OrderAck,
    OrderCancelSpec,
    OrderKind,
    OrderSide,
    OrderSnapshot,
    OrderSpec,
)
from bracketwatch.core.orders.ports import EventBus, OrderPort

_EnumT = TypeVar("_EnumT", bound=object)


class OrderValidationError(ValueError):
    """Raised when an OrderSpec fails validation."""


@dataclass(frozen=True)
class CancelAllReport:
    cancelled: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.cancelled) + len(self.failed)


class OrderService:
    def __init__(self, order_port: OrderPort, event_bus: Optional[EventBus] = None) -> None:
        self._order_port = order_port
        self._event_bus = event_bus

    @property
    def port(self) -> OrderPort:
        return self._order_port

    async def submit_order(self, spec: OrderSpec) -> OrderAck:
        normalized = self._normalize_spec(spec)
        self._validate(normalized)
        if self._event_bus:
            self._event_bus.publish(OrderIntent.now(normalized))
        logger.info(
            "placing {} {} {} x{} limit={} stop={}",
            normalized.kind.value,
            normalized.side.value,
            normalized.symbol,
            normalized.qty,
            normalized.limit_price,
            normalized.stop_price,
        )
        ack = await self._order_port.submit_order(normalized)
        if self._event_bus:
            self._event_bus.publish(
                OrderAccepted.now(normalized, order_id=ack.order_id, status=ack.status)
            )
        return ack

    async def cancel_order(self, spec: OrderCancelSpec) -> OrderAck:
        normalized = self._normalize_cancel_spec(spec)
        self._validate_cancel(normalized)
        ack = await self._order_port.cancel_order(normalized)
        if self._event_bus:
            self._event_bus.publish(OrderCancelRequested.now(normalized.order_id, status=ack.status))
        return ack

    async def list_orders(self) -> list[OrderSnapshot]:
        return await self._order_port.list_orders()

    async def cancel_all_pending(self) -> CancelAllReport:
        orders = await self._order_port.list_orders()
        report = CancelAllReport()
        for order in orders:
            if not order.status.is_live:
                continue
            try:
                await self.cancel_order(OrderCancelSpec(order_id=order.order_id))
            except GatewayError as exc:
                logger.warning("cancel failed for order {}: {}", order.order_id, exc)
                report.failed[order.order_id] = str(exc)
                continue
            report.cancelled.append(order.order_id)
        return report

    def _normalize_spec(self, spec: OrderSpec) -> OrderSpec:
        side = _coerce_enum(OrderSide, spec.side, "side")
        kind = _coerce_enum(OrderKind, spec.kind, "kind")
        symbol = spec.symbol.strip().upper()
        tif = spec.tif.strip().upper() if spec.tif else "DAY"
        exchange = spec.exchange.strip().upper() if spec.exchange else "SMART"
        currency = spec.currency.strip().upper() if spec.currency else "USD"

        return replace(
            spec,
            symbol=symbol,
            side=side,
            kind=kind,
            tif=tif,
            exchange=exchange,
            currency=currency,
        )

    def _normalize_cancel_spec(self, spec: OrderCancelSpec) -> OrderCancelSpec:
        return replace(spec, order_id=str(spec.order_id or "").strip())

    def _validate(self, spec: OrderSpec) -> None:
        if not spec.symbol:
            raise OrderValidationError("symbol is required")
        if spec.qty <= 0:
            raise OrderValidationError("qty must be greater than zero")
        if spec.kind in {OrderKind.LIMIT, OrderKind.STOP_LIMIT}:
            if spec.limit_price is None:
                raise OrderValidationError(f"limit_price is required for {spec.kind.value} orders")
            if spec.limit_price <= 0:
                raise OrderValidationError("limit_price must be greater than zero")
        if spec.kind in {OrderKind.STOP, OrderKind.STOP_LIMIT}:
            if spec.stop_price is None:
                raise OrderValidationError(f"stop_price is required for {spec.kind.value} orders")
            if spec.stop_price <= 0:
                raise OrderValidationError("stop_price must be greater than zero")
        if spec.kind == OrderKind.MARKET:
            if spec.limit_price is not None:
                raise OrderValidationError("limit_price is not valid for market orders")
            if spec.stop_price is not None:
                raise OrderValidationError("stop_price is not valid for market orders")
        if spec.kind == OrderKind.LIMIT and spec.stop_price is not None:
            raise OrderValidationError("stop_price is not valid for limit orders")
        if spec.kind == OrderKind.STOP and spec.limit_price is not None:
            raise OrderValidationError("limit_price is not valid for stop orders; use STOP_LIMIT")
        if not spec.tif:
            raise OrderValidationError("tif is required")

    def _validate_cancel(self, spec: OrderCancelSpec) -> None:
        if not spec.order_id:
            raise OrderValidationError("order_id is required")


def _coerce_enum(enum_cls: Type[_EnumT], value: object, name: str) -> _EnumT:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        normalized = value.strip().upper().replace("-", "_")
        try:
            return enum_cls(normalized)  # type: ignore[arg-type]
        except ValueError:
            pass
    raise OrderValidationError(f"invalid {name}: {value}")
