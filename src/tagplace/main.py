"""tagplace application entrypoint."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from tagplace import database
from tagplace.config import Settings, load_config, settings
from tagplace.engine.models import Decision
from tagplace.engine.pipeline import DecisionListener, ScanEngine
from tagplace.location import LocationTracker
from tagplace.preflight import BatteryMonitor
from tagplace.reader.base import BaseReader
from tagplace.store.models import PlacementRecord, ScanCategory
from tagplace.sync.client import SyncClient
from tagplace.sync.network import NetworkMonitor
from tagplace.sync.reconciler import SyncCounters, SyncListener, SyncReconciler

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


def _create_reader(mode: str) -> BaseReader | None:
    """Factory: instantiate the configured reader driver."""
    if mode == "mock":
        from tagplace.reader.mock import MockReader

        return MockReader()
    if mode == "none":
        return None
    logger.warning("Unknown reader mode '%s', skipping", mode)
    return None


class SyncStatus(SyncListener):
    """Keeps the latest reconciler events for the status endpoint."""

    def __init__(self) -> None:
        self.last_error: str | None = None
        self.last_retry: tuple[int, int] | None = None
        self.unsynced_count = 0

    def on_sync_started(self) -> None:
        self.last_error = None

    def on_sync_success(self, counters: SyncCounters) -> None:
        self.last_error = None
        self.last_retry = None

    def on_sync_failed(self, error: str) -> None:
        self.last_error = error

    def on_sync_retrying(self, attempt: int, delay_ms: int) -> None:
        self.last_retry = (attempt, delay_ms)

    def on_counter_updated(self, unsynced_count: int) -> None:
        self.unsynced_count = unsynced_count


class DecisionLog(DecisionListener):
    """Remembers the most recent decision and placement."""

    def __init__(self) -> None:
        self.last_decision: Decision | None = None
        self.last_placement: PlacementRecord | None = None

    def on_decision(self, decision: Decision) -> None:
        self.last_decision = decision

    def on_placement(self, record: PlacementRecord) -> None:
        self.last_placement = record


def _create_client(cfg: Settings) -> SyncClient | None:
    if not cfg.api_base_url:
        logger.warning("api_base_url not configured - placements will queue locally only")
        return None
    return SyncClient(cfg.api_base_url, token=cfg.api_token, timeout=cfg.api_timeout)


def build_engine(
    cfg: Settings,
    location: LocationTracker,
    reconciler: SyncReconciler | None,
    reader: BaseReader | None,
    listener: DecisionListener | None = None,
) -> ScanEngine:
    if not cfg.owner_id:
        logger.warning("owner_id not configured - placements will carry an empty owner")
    return ScanEngine(
        owner_id=cfg.owner_id or "",
        location=location,
        reconciler=reconciler,
        reader=reader,
        listener=listener,
        is_admin=cfg.is_admin,
        power_level_dbm=cfg.power_level_dbm,
        scan_category=ScanCategory(cfg.scan_category),
        window_ms=cfg.capture_window_ms,
        rssi_threshold_db=cfg.rssi_ambiguity_threshold_db,
        count_threshold=cfg.count_ambiguity_threshold,
        cooldown=timedelta(milliseconds=cfg.cooldown_ms),
        cooldown_arm_on_pass=cfg.cooldown_arm_on_pass,
        duplicate_window=timedelta(seconds=cfg.duplicate_window_seconds),
        duplicate_distance_m=cfg.duplicate_distance_m,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    # Import models to register them with SQLModel before init_db()
    import tagplace.store.models  # noqa: F401

    database.init_db()
    logger.info("Database initialized")

    cfg = load_config()
    location = LocationTracker()
    reader = _create_reader(cfg.reader_mode)
    client = _create_client(cfg)

    sync_status = SyncStatus()
    reconciler = SyncReconciler(
        database.engine,
        client,
        listener=sync_status,
        sync_threshold=cfg.sync_threshold,
        initial_delay_ms=cfg.retry_initial_delay_ms,
        max_delay_ms=cfg.retry_max_delay_ms,
        max_attempts=cfg.retry_max_attempts,
    )
    await reconciler.start()

    decisions = DecisionLog()
    engine = build_engine(cfg, location, reconciler, reader, decisions)
    await engine.start()

    monitor: NetworkMonitor | None = None
    if client is not None:
        monitor = NetworkMonitor(client, poll_interval=cfg.network_check_interval)
        monitor.on_available(reconciler.on_network_restored)
        await monitor.start()

    app.state.config = cfg
    app.state.location = location
    app.state.reader = reader
    app.state.client = client
    app.state.reconciler = reconciler
    app.state.sync_status = sync_status
    app.state.engine = engine
    app.state.decisions = decisions
    app.state.battery = BatteryMonitor()
    app.state.monitor = monitor

    yield

    if monitor is not None:
        await monitor.stop()
    await engine.stop()
    await reconciler.stop()
    if client is not None:
        await client.aclose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="tagplace",
    description="Tag-read placement decisions with offline-tolerant sync",
    version="0.1.0",
    lifespan=lifespan,
)

# Register routers
from tagplace.api.routes import router as api_router  # noqa: E402

app.include_router(api_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def main() -> None:
    import uvicorn

    logger.info("Starting tagplace on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
