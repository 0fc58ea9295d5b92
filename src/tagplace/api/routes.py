"""Local control API: sessions, sync, placements, operator profile and field tuning."""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlmodel import Session

from tagplace.config import save_config
from tagplace.database import get_session
from tagplace.engine.pipeline import ScanEngine
from tagplace.location import LocationTracker
from tagplace.preflight import validate_readiness
from tagplace.store.models import PlacementRecord
from tagplace.store.placements import list_placements
from tagplace.sync.client import LoginResponse, SyncClient, SyncTransportError
from tagplace.sync.reconciler import SyncReconciler

router = APIRouter(prefix="/api")


def get_engine(request: Request) -> ScanEngine:
    return request.app.state.engine


def get_reconciler(request: Request) -> SyncReconciler:
    return request.app.state.reconciler


def get_location(request: Request) -> LocationTracker:
    return request.app.state.location


def get_client(request: Request) -> SyncClient:
    client = request.app.state.client
    if client is None:
        raise HTTPException(status_code=503, detail="Backend API not configured")
    return client


# Request models
class StopSessionRequest(BaseModel):
    clear_local: bool = True


class PositionRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    altitude: float = 0.0
    accuracy: float = Field(ge=0)


class TuningRequest(BaseModel):
    capture_window_ms: int | None = Field(default=None, ge=250, le=500)
    rssi_ambiguity_threshold_db: int | None = Field(default=None, ge=3, le=7)
    count_ambiguity_threshold: int | None = Field(default=None, ge=0)
    power_level_dbm: int | None = Field(default=None, ge=5, le=33)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class RegisterRequest(LoginRequest):
    owner_id: str = Field(min_length=1)
    company_id: int | None = None


# --- Status ---


@router.get("/status")
def status(
    request: Request,
    engine: ScanEngine = Depends(get_engine),
    reconciler: SyncReconciler = Depends(get_reconciler),
) -> dict[str, object]:
    sync_status = request.app.state.sync_status
    last_decision = request.app.state.decisions.last_decision
    reader = engine.reader
    return {
        "last_decision": (
            {"reason": last_decision.reason, "identifier": last_decision.identifier}
            if last_decision is not None
            else None
        ),
        "scanning": engine.scanning,
        "session_id": engine.session.session_id if engine.session else None,
        "sequence": engine.sequence,
        "dropped_reads": engine.dropped_reads,
        "reader_state": reader.get_connection_state() if reader is not None else None,
        "sync_state": reconciler.state,
        "last_sync_result": reconciler.last_result,
        "unsynced_count": reconciler.unsynced_count,
        "retry_attempts": reconciler.retry_attempts,
        "retry_scheduled": reconciler.retry_scheduled,
        "last_error": sync_status.last_error,
        "last_placement_number": reconciler.counters.last_number,
        "pallet_count": reconciler.counters.pallet_count,
        "placement_count": reconciler.counters.placement_count,
    }


# --- Sessions ---


@router.post("/session/start")
async def start_session(
    engine: ScanEngine = Depends(get_engine),
    reconciler: SyncReconciler = Depends(get_reconciler),
) -> dict[str, object]:
    if engine.scanning:
        raise HTTPException(status_code=409, detail="Session already running")
    if not engine.owner_id:
        raise HTTPException(status_code=400, detail="owner_id not configured")

    counters = None
    if reconciler.client is not None:
        counters = await reconciler.fetch_last_count(engine.owner_id)

    info = engine.start_session()
    return {
        "session_id": info.session_id,
        "started_at": info.started_at.isoformat(),
        "reader_started": info.reader_started,
        "power_applied": info.power_applied,
        "last_placement_number": counters.last_number if counters else None,
    }


@router.post("/session/stop")
async def stop_session(
    request: StopSessionRequest | None = None,
    engine: ScanEngine = Depends(get_engine),
) -> dict[str, str]:
    if not engine.scanning:
        raise HTTPException(status_code=409, detail="No session running")
    clear = request.clear_local if request is not None else True
    engine.stop_session(clear_admin_data=clear)
    return {"status": "stopped"}


# --- Position ---


@router.post("/position", status_code=204)
def report_position(
    request: PositionRequest,
    location: LocationTracker = Depends(get_location),
) -> None:
    location.on_position(request.latitude, request.longitude, request.altitude, request.accuracy)


# --- Sync ---


@router.post("/sync", status_code=202)
async def force_sync(
    reconciler: SyncReconciler = Depends(get_reconciler),
) -> dict[str, str | int]:
    reconciler.force_sync_now()
    return {"status": "sync requested", "unsynced_count": reconciler.unsynced_count}


# --- Placements ---


@router.get("/placements")
def get_placements(
    limit: int = 100,
    session: Session = Depends(get_session),
) -> list[PlacementRecord]:
    return list_placements(session, limit=limit)


@router.delete("/placements")
async def clear_placements(
    reconciler: SyncReconciler = Depends(get_reconciler),
) -> dict[str, str | int]:
    removed = await reconciler.clear_local()
    return {"status": "cleared", "deleted": removed}


# --- Profile ---


def _apply_login(
    result: LoginResponse, engine: ScanEngine, failure_status: int = 401
) -> dict[str, object]:
    """Adopt the operator identity the server handed back and persist it."""
    if not result.success:
        raise HTTPException(status_code=failure_status, detail=result.message or "Rejected")
    values: dict[str, str | int | float | bool | None] = {"is_admin": result.is_admin}
    if result.owner_id:
        engine.owner_id = result.owner_id
        values["owner_id"] = result.owner_id
    if result.token:
        values["api_token"] = result.token
    engine.is_admin = result.is_admin
    save_config(values)
    return {"owner_id": engine.owner_id, "is_admin": engine.is_admin}


@router.post("/auth/login")
async def login(
    request: LoginRequest,
    client: SyncClient = Depends(get_client),
    engine: ScanEngine = Depends(get_engine),
) -> dict[str, object]:
    if engine.scanning:
        raise HTTPException(status_code=409, detail="Stop the session before switching operator")
    try:
        result = await client.login(request.username, request.password)
    except SyncTransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return _apply_login(result, engine)


@router.post("/auth/register", status_code=201)
async def register(
    request: RegisterRequest,
    client: SyncClient = Depends(get_client),
    engine: ScanEngine = Depends(get_engine),
) -> dict[str, object]:
    if engine.scanning:
        raise HTTPException(status_code=409, detail="Stop the session before switching operator")
    profile: dict[str, object] = {"mason_id": request.owner_id}
    if request.company_id is not None:
        profile["company_id"] = request.company_id
    try:
        result = await client.register(request.username, request.password, **profile)
    except SyncTransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if result.success and result.token:
        client.token = result.token
    return _apply_login(result, engine, failure_status=400)


@router.delete("/profile")
async def reset_profile(
    client: SyncClient = Depends(get_client),
    engine: ScanEngine = Depends(get_engine),
    reconciler: SyncReconciler = Depends(get_reconciler),
) -> dict[str, str | int]:
    if engine.scanning:
        raise HTTPException(status_code=409, detail="Stop the session before resetting")
    if not engine.owner_id:
        raise HTTPException(status_code=400, detail="owner_id not configured")
    result = await reconciler.reset_profile(engine.owner_id)
    if result is None:
        raise HTTPException(status_code=502, detail="Backend API unreachable")
    if not result.success:
        raise HTTPException(status_code=502, detail=result.message or "Reset declined")
    return {"status": "reset", "deleted": result.deleted_count}


# --- Preflight ---


@router.get("/preflight")
def preflight(
    request: Request,
    engine: ScanEngine = Depends(get_engine),
    location: LocationTracker = Depends(get_location),
) -> dict[str, object]:
    result = validate_readiness(engine.reader, location, request.app.state.battery)
    return {
        "ready": result.ready,
        "has_warnings": result.has_warnings,
        "battery_level": result.battery_level,
        "position_accuracy": result.position_accuracy,
        "checks": {
            "battery": {"status": result.battery.status, "message": result.battery.message},
            "connection": {
                "status": result.connection.status,
                "message": result.connection.message,
            },
            "position": {"status": result.position.status, "message": result.position.message},
        },
    }


# --- Tuning ---


@router.patch("/tuning")
def update_tuning(
    request: TuningRequest,
    engine: ScanEngine = Depends(get_engine),
) -> dict[str, int]:
    values = request.model_dump(exclude_none=True)
    if not values:
        raise HTTPException(status_code=400, detail="No tuning values given")

    if request.capture_window_ms is not None:
        engine.window_ms = request.capture_window_ms
    if request.rssi_ambiguity_threshold_db is not None:
        engine.rssi_threshold_db = request.rssi_ambiguity_threshold_db
    if request.count_ambiguity_threshold is not None:
        engine.count_threshold = request.count_ambiguity_threshold
    if request.power_level_dbm is not None:
        # Applied on the next session start
        engine.power_level_dbm = request.power_level_dbm

    save_config(values)
    return {
        "capture_window_ms": engine.window_ms,
        "rssi_ambiguity_threshold_db": engine.rssi_threshold_db,
        "count_ambiguity_threshold": engine.count_threshold,
        "power_level_dbm": engine.power_level_dbm,
    }
