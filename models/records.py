"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class AlertKind(str, Enum):
    """Rule families that can raise an alert."""

    instant = "instant"
    sustained = "sustained"


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC-3339 timestamp, requiring an explicit offset."""
    candidate = value.strip()
    if not candidate:
        raise ValueError("Timestamp is empty.")

    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise ValueError("Invalid timestamp format") from exc

    if parsed.tzinfo is None:
        raise ValueError("Timestamp must carry a timezone offset")

    return parsed


def format_timestamp(value: datetime) -> str:
    """UTC RFC-3339 with a fixed-width fraction, so string order is time order."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class Reading:
    """One telemetry sample from a device."""

    device_id: int
    timestamp: datetime
    pressure: float
    temperature: float

    def to_document(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "timestamp": format_timestamp(self.timestamp),
            "pressure": self.pressure,
            "temperature": self.temperature,
        }


@dataclass(frozen=True, slots=True)
class Alert:
    """A fired rule, attributable to exactly one triggering reading."""

    kind: AlertKind
    device_id: int
    timestamp: datetime
    reason: str
    pressure: Optional[float] = None
    temperature: Optional[float] = None
    change: Optional[float] = None

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "type": self.kind.value,
            "device_id": self.device_id,
            "timestamp": format_timestamp(self.timestamp),
            "reason": self.reason,
        }
        if self.kind is AlertKind.instant:
            document["pressure"] = self.pressure
            document["temperature"] = self.temperature
        else:
            document["change"] = self.change
        return document

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Alert":
        return cls(
            kind=AlertKind(document["type"]),
            device_id=int(document["device_id"]),
            timestamp=parse_timestamp(document["timestamp"]),
            reason=document["reason"],
            pressure=document.get("pressure"),
            temperature=document.get("temperature"),
            change=document.get("change"),
        )
