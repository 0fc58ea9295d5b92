"""HTTP transport for the remote placement service.

Transport faults (connection refused, DNS, timeouts) raise
``SyncTransportError``. Any response the server actually sends back,
including HTTP errors, is returned as a ``SyncResponse`` so callers can
tell a declined batch apart from an unreachable server.
"""

import logging
from datetime import UTC, datetime
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tagplace.store.models import PlacementRecord

logger = logging.getLogger(__name__)

# Paths that must not carry the bearer token
_PUBLIC_PATHS = ("auth/login", "auth/register")


class SyncTransportError(Exception):
    """The request never produced a response (no network, timeout)."""


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


_T = TypeVar("_T", bound=_WireModel)


class PlacementEntry(_WireModel):
    identifier: str = Field(alias="brickNumber")
    timestamp: int  # epoch milliseconds
    latitude: float
    longitude: float
    altitude: float
    accuracy: float
    session_id: str = Field(alias="buildSessionId")
    sequence: int = Field(alias="eventSeq")
    rssi_avg: int = Field(alias="rssiAvg")
    rssi_peak: int = Field(alias="rssiPeak")
    reads_in_window: int = Field(alias="readsInWindow")
    power_level: int = Field(alias="powerLevel")
    decision_reason: str = Field(alias="decisionStatus")
    scan_category: str = Field(default="placement", alias="scanType")

    @classmethod
    def from_record(cls, record: PlacementRecord) -> "PlacementEntry":
        return cls(
            identifier=record.identifier,
            timestamp=_epoch_ms(record.timestamp),
            latitude=record.latitude,
            longitude=record.longitude,
            altitude=record.altitude,
            accuracy=record.accuracy,
            session_id=record.session_id,
            sequence=record.sequence,
            rssi_avg=record.rssi_avg,
            rssi_peak=record.rssi_peak,
            reads_in_window=record.reads_in_window,
            power_level=record.power_level,
            decision_reason=str(record.decision_reason),
            scan_category=str(record.scan_category or "placement"),
        )


class SyncRequest(_WireModel):
    owner_id: str = Field(alias="masonId")
    placements: list[PlacementEntry]


class SyncResponse(_WireModel):
    success: bool = False
    message: str | None = None
    last_number: int = Field(default=0, alias="lastPlacementNumber")
    pallet_count: int = Field(default=0, alias="palletCount")
    placement_count: int = Field(default=0, alias="placementCount")


class LoginResponse(_WireModel):
    success: bool = False
    message: str | None = None
    token: str | None = None
    owner_id: str | None = Field(default=None, alias="masonId")
    is_admin: bool = Field(default=False, alias="isAdmin")


class ResetResponse(_WireModel):
    success: bool = False
    message: str | None = None
    deleted_count: int = Field(default=0, alias="deletedCount")


def _epoch_ms(ts: datetime) -> int:
    # SQLite hands datetimes back naive; they were stored as UTC
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return int(ts.timestamp() * 1000)


class SyncClient:
    """Async client for the placement service API.

    Parameters
    ----------
    base_url:
        Service root, e.g. ``http://10.0.0.5:8080/api/``.
    token:
        Bearer token; replaced after a successful ``login``.
    timeout:
        Per-request bound in seconds. Every call made through this client is
        bounded by it, so no sync attempt can hang.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url.endswith("/"):
            base_url += "/"
        self.base_url = base_url
        self.token = token
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, path: str) -> dict[str, str]:
        if self.token and not path.startswith(_PUBLIC_PATHS):
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method, path, json=json, params=params, headers=self._headers(path)
            )
        except httpx.TransportError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise SyncTransportError(str(e) or type(e).__name__) from e

    @staticmethod
    def _parse(model: type[_T], response: httpx.Response) -> _T:
        """Decode a body into ``model``; undecodable bodies become a failed result."""
        try:
            parsed = model.model_validate(response.json())
        except (ValueError, ValidationError):
            logger.warning("Unreadable response body (HTTP %d)", response.status_code)
            return model.model_validate({"success": False, "message": f"HTTP {response.status_code}"})
        if not response.is_success and parsed.success:  # type: ignore[attr-defined]
            # Trust the status line over the body
            return parsed.model_copy(update={"success": False})
        return parsed

    async def sync_placements(self, owner_id: str, records: list[PlacementRecord]) -> SyncResponse:
        request = SyncRequest(
            owner_id=owner_id,
            placements=[PlacementEntry.from_record(r) for r in records],
        )
        response = await self._request(
            "POST", "placements/sync", json=request.model_dump(by_alias=True)
        )
        result = self._parse(SyncResponse, response)
        logger.info(
            "Sync response for %s (%d placements): HTTP %d success=%s",
            owner_id,
            len(records),
            response.status_code,
            result.success,
        )
        return result

    async def fetch_last_count(self, owner_id: str) -> SyncResponse:
        """Bootstrap the server's authoritative counters for an owner."""
        response = await self._request("GET", "placements/last", params={"masonId": owner_id})
        return self._parse(SyncResponse, response)

    async def login(self, username: str, password: str) -> LoginResponse:
        response = await self._request(
            "POST", "auth/login", json={"username": username, "password": password}
        )
        result = self._parse(LoginResponse, response)
        if result.success and result.token:
            self.token = result.token
        return result

    async def register(self, username: str, password: str, **profile: Any) -> LoginResponse:
        payload: dict[str, Any] = {"username": username, "password": password, **profile}
        response = await self._request("POST", "auth/register", json=payload)
        return self._parse(LoginResponse, response)

    async def reset_profile(self, owner_id: str) -> ResetResponse:
        """Delete every placement the server holds for ``owner_id``."""
        response = await self._request("DELETE", f"placements/mason/{owner_id}")
        return self._parse(ResetResponse, response)

    async def check_health(self) -> bool:
        """Whether the service answers at all. Never raises."""
        try:
            response = await self._request("GET", "health")
        except SyncTransportError:
            return False
        return response.status_code < 500
