"""Placement record model and scan category enum."""

import enum
from datetime import UTC, datetime

from sqlmodel import Field, SQLModel

from tagplace.engine.models import ReasonCode
from tagplace.location import SENTINEL_ACCURACY_M


class ScanCategory(enum.StrEnum):
    placement = "placement"
    pallet = "pallet"


class PlacementRecord(SQLModel, table=True):
    """An accepted placement, queued locally until the remote confirms it."""

    id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    identifier: str = Field(index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    session_id: str
    sequence: int  # monotonic within session_id, starts at 1
    # Sentinel 0/0/0 with SENTINEL_ACCURACY_M when no position was available
    latitude: float = 0.0
    longitude: float = 0.0
    altitude: float = 0.0
    accuracy: float = SENTINEL_ACCURACY_M
    rssi_avg: int = 0
    rssi_peak: int = 0
    reads_in_window: int = 0
    power_level: int = 0
    decision_reason: ReasonCode = ReasonCode.accepted
    scan_category: ScanCategory = ScanCategory.placement
    synced: bool = Field(default=False, index=True)
