from __future__ import annotations

from importlib import import_module
from typing import Any

_BACKEND_CANDIDATES = ("ib_async", "ib_insync")
_REQUIRED_SYMBOLS = ("IB", "LimitOrder", "MarketOrder", "Stock", "StopLimitOrder", "StopOrder", "Trade")
_LAST_IMPORT_ERROR: Exception | None = None
_backend: Any | None = None
_backend_name = ""

for candidate in _BACKEND_CANDIDATES:
    try:
        _backend = import_module(candidate)
        _backend_name = candidate
        break
    except ImportError as exc:
        _LAST_IMPORT_ERROR = exc

if _backend is None:
    raise ModuleNotFoundError(
        "Could not import an IB client backend. Install one of: "
        + ", ".join(_BACKEND_CANDIDATES)
    ) from _LAST_IMPORT_ERROR

_missing = [name for name in _REQUIRED_SYMBOLS if getattr(_backend, name, None) is None]
if _missing:
    raise ImportError(
        f"IB client backend {_backend_name} is missing required symbols: {', '.join(_missing)}"
    )

IB = _backend.IB
IB_CLIENT_BACKEND = _backend_name
LimitOrder = _backend.LimitOrder
MarketOrder = _backend.MarketOrder
Stock = _backend.Stock
StopLimitOrder = _backend.StopLimitOrder
StopOrder = _backend.StopOrder
Trade = _backend.Trade
UNSET_DOUBLE = 1.7976931348623157e308

__all__ = [
    "IB",
    "IB_CLIENT_BACKEND",
    "LimitOrder",
    "MarketOrder",
    "Stock",
    "StopLimitOrder",
    "StopOrder",
    "Trade",
    "UNSET_DOUBLE",
]
