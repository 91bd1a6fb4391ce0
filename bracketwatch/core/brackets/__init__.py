from bracketwatch.core.brackets.discovery import DiscoveryReport, discover_brackets
from bracketwatch.core.brackets.events import (
    BracketMonitorStarted,
    BracketMonitorStopped,
    BracketResolved,
    BracketTickFailed,
    BracketTickObserved,
    BracketTransitioned,
)
from bracketwatch.core.brackets.guard import CancellationGuard, CancelOutcome
from bracketwatch.core.brackets.models import (
    Bracket,
    BracketState,
    BracketValidationError,
    MonitorConfigError,
    MonitorOptions,
    PositionSide,
    RetryPolicy,
)
from bracketwatch.core.brackets.monitor import BracketMonitor, MonitorHandle, start_bracket_monitor
from bracketwatch.core.brackets.placement import (
    BracketPlacementError,
    BracketPlacementSpec,
    BracketPrices,
    derive_bracket_prices,
    place_bracket,
    wait_for_entry_fill,
)
from bracketwatch.core.brackets.policy import (
    BracketAction,
    ReconciliationDecision,
    estimate_outcome,
    resolve,
)

__all__ = [
    "Bracket",
    "BracketState",
    "PositionSide",
    "RetryPolicy",
    "MonitorOptions",
    "BracketValidationError",
    "MonitorConfigError",
    "BracketAction",
    "ReconciliationDecision",
    "resolve",
    "estimate_outcome",
    "CancellationGuard",
    "CancelOutcome",
    "BracketMonitor",
    "MonitorHandle",
    "start_bracket_monitor",
    "BracketMonitorStarted",
    "BracketTickObserved",
    "BracketTickFailed",
    "BracketTransitioned",
    "BracketResolved",
    "BracketMonitorStopped",
    "BracketPlacementError",
    "BracketPlacementSpec",
    "BracketPrices",
    "derive_bracket_prices",
    "place_bracket",
    "wait_for_entry_fill",
    "DiscoveryReport",
    "discover_brackets",
]
