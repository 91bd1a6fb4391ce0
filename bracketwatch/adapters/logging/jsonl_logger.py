from __future__ import annotations

import json
from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional, Union


class JsonlEventLogger:
    """Append-only journal: one {"event_type", "event"} JSON object per line."""

    def __init__(
        self,
        path: Union[str, Path],
        *,
        event_types: Optional[Iterable[type]] = None,
    ) -> None:
        self._path = Path(path)
        self._event_types = tuple(event_types) if event_types else None

    @property
    def path(self) -> Path:
        return self._path

    def handle(self, event: object) -> None:
        if self._event_types and not isinstance(event, self._event_types):
            return
        payload = {
            "event_type": type(event).__name__,
            "event": _serialize(event),
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload))
            handle.write("\n")


def read_events(path: Union[str, Path]) -> list[dict[str, Any]]:
    journal = Path(path)
    if not journal.exists():
        return []
    events: list[dict[str, Any]] = []
    with journal.open(encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if line:
                events.append(json.loads(line))
    return events


def _serialize(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return {field.name: _serialize(getattr(value, field.name)) for field in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat(timespec="microseconds")
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_serialize(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _serialize(val) for key, val in value.items()}
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return repr(value)
