"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import AwareDatetime, BaseModel, Field

from models.records import Alert, AlertKind, Reading


class ReadingIn(BaseModel):
    """Telemetry sample submitted by a device."""

    device_id: int = Field(..., gt=0, description="Originating device identifier.")
    timestamp: AwareDatetime = Field(..., description="RFC-3339 timestamp with offset.")
    pressure: float = Field(..., ge=0, description="Pressure in MPa.")
    temperature: float = Field(..., ge=0, description="Temperature in degrees Celsius.")

    def to_reading(self) -> Reading:
        return Reading(
            device_id=self.device_id,
            timestamp=self.timestamp,
            pressure=self.pressure,
            temperature=self.temperature,
        )


class ReadingOut(BaseModel):
    device_id: int
    timestamp: datetime
    pressure: float
    temperature: float

    @classmethod
    def from_reading(cls, reading: Reading) -> "ReadingOut":
        return cls(
            device_id=reading.device_id,
            timestamp=reading.timestamp,
            pressure=reading.pressure,
            temperature=reading.temperature,
        )


class IngestResponse(BaseModel):
    """Immediate response payload after accepting a reading."""

    status: str = Field("accepted", description="Ingestion outcome.")


class AlertOut(BaseModel):
    """A stored alert; rule-specific fields are null for the other kind."""

    type: AlertKind
    device_id: int
    timestamp: datetime
    reason: str
    pressure: Optional[float] = None
    temperature: Optional[float] = None
    change: Optional[float] = None

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertOut":
        return cls(
            type=alert.kind,
            device_id=alert.device_id,
            timestamp=alert.timestamp,
            reason=alert.reason,
            pressure=alert.pressure,
            temperature=alert.temperature,
            change=alert.change,
        )


class ConsumerStatus(BaseModel):
    """Lifecycle state and counters of the rule engine consumer."""

    state: str
    ack_policy: str
    window_size: int
    cached_devices: int = Field(..., ge=0)
    counters: Dict[str, int] = Field(default_factory=dict)
